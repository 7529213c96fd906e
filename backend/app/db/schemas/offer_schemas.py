# app/db/schemas/offer_schemas.py
# Read-only collaborator documents. Offers and sellers are managed elsewhere.
from typing import List, Optional

from pydantic import BaseModel, Field

from .common_schemas import PyObjectId


class OfferProduct(BaseModel):
    id: Optional[PyObjectId] = Field(None, alias="_id")
    name: str
    price_in_cents: int = Field(..., ge=0)
    compare_at_price_in_cents: Optional[int] = None
    custom_id: Optional[str] = None

    model_config = {"populate_by_name": True}


class UpsellConfig(BaseModel):
    enabled: bool = False
    name: Optional[str] = None
    price_in_cents: int = 0
    custom_id: Optional[str] = None
    redirect_url: Optional[str] = None
    fallback_checkout_url: Optional[str] = None
    paypal_one_click_enabled: bool = False
    options: List[OfferProduct] = Field(default_factory=list)  # alternative items the buyer may pick


class FacebookPixel(BaseModel):
    pixel_id: str
    access_token: str


class OfferDoc(BaseModel):
    id: PyObjectId = Field(..., alias="_id")
    slug: str
    name: str
    owner_id: str
    currency: str = "brl"
    main_product: OfferProduct
    order_bumps: List[OfferProduct] = Field(default_factory=list)
    upsell: Optional[UpsellConfig] = None
    thank_you_page_url: Optional[str] = None

    facebook_pixels: List[FacebookPixel] = Field(default_factory=list)
    # Legacy single pixel fields, merged into `pixels()`
    facebook_pixel_id: Optional[str] = None
    facebook_access_token: Optional[str] = None

    access_webhook_url: Optional[str] = None
    tracking_webhook_url: Optional[str] = None
    tracking_api_token: Optional[str] = None

    model_config = {"populate_by_name": True}

    def pixels(self) -> List[FacebookPixel]:
        """Configured pixels plus the legacy pair, deduplicated by pixel id."""
        merged = list(self.facebook_pixels)
        if self.facebook_pixel_id and self.facebook_access_token:
            merged.append(FacebookPixel(pixel_id=self.facebook_pixel_id, access_token=self.facebook_access_token))
        seen, unique = set(), []
        for p in merged:
            if p.pixel_id and p.access_token and p.pixel_id not in seen:
                seen.add(p.pixel_id)
                unique.append(p)
        return unique

    def find_bump(self, product_id: str) -> Optional[OfferProduct]:
        return next((b for b in self.order_bumps if b.id == product_id), None)


class OwnerDoc(BaseModel):
    id: PyObjectId = Field(..., alias="_id")
    email: Optional[str] = None
    stripe_account_id: Optional[str] = None
    paypal_client_id: Optional[str] = None
    paypal_client_secret: Optional[str] = None

    model_config = {"populate_by_name": True}

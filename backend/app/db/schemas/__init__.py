# app/db/schemas/__init__.py
from .common_schemas import PyObjectId
from .sale_schemas import SaleItem, SaleDoc, SaleStatus, PaymentProvider, IntegrationChannel
from .offer_schemas import OfferDoc, OfferProduct, OwnerDoc, UpsellConfig, FacebookPixel
from .upsell_schemas import UpsellSessionDoc
from .metric_schemas import CheckoutMetricDoc, MetricType

from shipdesk.models.order import Order, OrderItem
from shipdesk.models.shipping_settings import ShippingSettings, BoxPreset, SHIPPING_SETTINGS_ID
from shipdesk.models.shipment import OrderShipment, RateQuoteCacheEntry, LabelState

from app.services.payment_gateway.factory import get_payment_gateway, get_supported_gateways
from app.services.payment_gateway.interface import PaymentGatewayInterface

__all__ = ["PaymentGatewayInterface", "get_payment_gateway", "get_supported_gateways"]

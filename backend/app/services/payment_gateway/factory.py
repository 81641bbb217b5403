from app.services.payment_gateway.interface import PaymentGatewayInterface
from app.services.payment_gateway.mock_gateway import MockGateway
from app.services.payment_gateway.stripe_gateway import StripeGateway


class UnsupportedGatewayError(Exception):
    """
    Custom exception for unsupported payment gateway types.
    """
    pass


def get_payment_gateway(gateway_type: str, gateway_config: dict) -> PaymentGatewayInterface:
    """
    Factory function to get a payment gateway instance from a configuration dictionary.
    """
    gateway_type = gateway_type.lower()

    if gateway_type == "mock":
        return MockGateway(auto_succeed=gateway_config.get("auto_succeed", True))

    if gateway_type == "stripe":
        secret_key = gateway_config.get("secret_key")
        if not secret_key:
            raise ValueError("Stripe gateway requires a secret_key.")
        return StripeGateway(
            secret_key=secret_key,
            api_base=gateway_config.get("api_base"),
            timeout=gateway_config.get("timeout", 15.0),
        )

    raise UnsupportedGatewayError(f"Payment gateway '{gateway_type}' is not supported.")


def get_supported_gateways() -> list[str]:
    return ["stripe", "mock"]

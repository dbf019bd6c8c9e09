"""HTTP surface of the checkout backend."""
from .main import CheckoutServices, build_services, create_app

__all__ = ["CheckoutServices", "build_services", "create_app"]

"""FastAPI application and routes."""
from .main import app
from .schemas import HealthCheckResponse, OrderResponse, WebhookResponse

__all__ = ["app", "HealthCheckResponse", "OrderResponse", "WebhookResponse"]

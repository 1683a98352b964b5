"""
SDK for AI Quota Guard.

Provides the provider gateway and its normalized request/response types.
"""

from .gateway import GatewayConfig, ProviderGateway
from .types import AIRequest, AIResponse

__all__ = ["AIRequest", "AIResponse", "GatewayConfig", "ProviderGateway"]

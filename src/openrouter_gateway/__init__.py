from .config import GatewayConfig
from .gateway import StreamingGateway

__all__ = ["GatewayConfig", "StreamingGateway"]

from .client_factory import create_mqtt_client
from .topics import TopicScheme
from .transport import CommandSink, HealthStatus, MessageTransport

__all__ = ["CommandSink", "HealthStatus", "MessageTransport", "TopicScheme", "create_mqtt_client"]

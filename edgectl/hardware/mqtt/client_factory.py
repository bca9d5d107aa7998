"""
Helpers for constructing MQTT clients that work across paho-mqtt 1.x and 2.x.

The 2.x releases add a callback API version flag; the transport's handlers use
the legacy v3.1.1 callback signatures, so we request VERSION1 when the enum is
available and fall back to the bare constructor on older installations.
"""
from __future__ import annotations

from typing import Any, Dict

import paho.mqtt.client as mqtt


def create_mqtt_client(
    client_id: str = "",
    *,
    username: str | None = None,
    password: str | None = None,
    clean_session: bool = False,
    **kwargs: Any,
) -> mqtt.Client:
    """
    Build an MQTT client for the controller session.

    Args:
        client_id: Client identifier. Required by brokers for persistent sessions.
        username, password: Optional broker credentials.
        clean_session: False keeps the broker-side session (and its QoS 1
            state) across reconnects.
        kwargs: Extra keyword arguments forwarded to the client constructor.
    """
    client_kwargs: Dict[str, Any] = {"client_id": client_id or ""}

    # MQTT v3.1.1 by default for broker compatibility.
    client_kwargs["protocol"] = kwargs.pop("protocol", getattr(mqtt, "MQTTv311", 4))
    # Brokers reject a persistent session without an identity.
    client_kwargs["clean_session"] = clean_session if client_id else True
    client_kwargs.update(kwargs)

    callback_api_version = getattr(mqtt, "CallbackAPIVersion", None)
    if callback_api_version:
        api_candidates = ("VERSION1", "V1")
        callback_value = next(
            (getattr(callback_api_version, attr) for attr in api_candidates if hasattr(callback_api_version, attr)),
            None,
        )
        if callback_value is not None:
            client_kwargs["callback_api_version"] = callback_value

    try:
        client = mqtt.Client(**client_kwargs)
    except TypeError:
        # Older paho versions do not support callback_api_version; retry with basics.
        client_kwargs.pop("callback_api_version", None)
        client = mqtt.Client(**client_kwargs)

    if username:
        client.username_pw_set(username, password)
    return client

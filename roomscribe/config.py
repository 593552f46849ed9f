from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from typing import Optional


DEFAULT_TRANSCRIBE_URL = "ws://127.0.0.1:8765/ws"
DEFAULT_JOIN_URL = ""  # empty: credentials come from the in-process room hub


@dataclass(frozen=True)
class CaptureConfig:
    segment_interval_ms: int  # one segment boundary per interval
    samplerate: int


@dataclass(frozen=True)
class MicrophoneConfig:
    enabled: bool
    device_index: Optional[int]
    channels: int
    blocksize: int


@dataclass(frozen=True)
class TransportConfig:
    url: str
    heartbeat: Optional[float]
    connect_timeout: float
    message_format: str  # "plain" or "envelope"


@dataclass(frozen=True)
class JoinConfig:
    url: str
    timeout: float


@dataclass(frozen=True)
class ScribeConfig:
    capture: CaptureConfig
    microphone: MicrophoneConfig
    transport: TransportConfig
    join: JoinConfig


def parse_scribe_config(config_dict: dict, environ: Optional[dict] = None) -> ScribeConfig:
    """Parse the ``scribe`` section of config.json.

    Example:
        {
            "capture": {"segment_interval_ms": 1000, "samplerate": 16000},
            "microphone": {"enabled": true, "device_index": null, "channels": 1},
            "transport": {"url": "wss://...", "message_format": "envelope"},
            "join": {"url": "https://.../join-room"}
        }

    ROOMSCRIBE_TRANSCRIBE_URL and ROOMSCRIBE_JOIN_URL override the URLs.
    """
    env = os.environ if environ is None else environ
    capture_dict = config_dict.get("capture", {})
    mic_dict = config_dict.get("microphone", {})
    transport_dict = config_dict.get("transport", {})
    join_dict = config_dict.get("join", {})

    interval_ms = int(capture_dict.get("segment_interval_ms", 1000))
    if interval_ms <= 0:
        raise ValueError("capture.segment_interval_ms must be positive")

    device_index = mic_dict.get("device_index")
    heartbeat = transport_dict.get("heartbeat", 30.0)

    return ScribeConfig(
        capture=CaptureConfig(
            segment_interval_ms=interval_ms,
            samplerate=int(capture_dict.get("samplerate", 16000)),
        ),
        microphone=MicrophoneConfig(
            enabled=bool(mic_dict.get("enabled", True)),
            device_index=int(device_index) if device_index is not None else None,
            channels=int(mic_dict.get("channels", 1)),
            blocksize=int(mic_dict.get("blocksize", 1024)),
        ),
        transport=TransportConfig(
            url=env.get("ROOMSCRIBE_TRANSCRIBE_URL") or transport_dict.get("url", DEFAULT_TRANSCRIBE_URL),
            heartbeat=float(heartbeat) if heartbeat else None,
            connect_timeout=float(transport_dict.get("connect_timeout", 10.0)),
            message_format=str(transport_dict.get("message_format", "plain")).lower(),
        ),
        join=JoinConfig(
            url=env.get("ROOMSCRIBE_JOIN_URL") or join_dict.get("url", DEFAULT_JOIN_URL),
            timeout=float(join_dict.get("timeout", 10.0)),
        ),
    )


def load_config_file(config_path: str) -> dict:
    if not os.path.exists(config_path):
        return {}
    with open(config_path, "r", encoding="utf-8") as config_file:
        return json.load(config_file)


def load_scribe_config(config_path: str) -> ScribeConfig:
    config = load_config_file(config_path)
    logging.getLogger("roomscribe.config").info(
        "Config loaded: path=%s keys=%s", config_path, sorted(config.keys())
    )
    return parse_scribe_config(config.get("scribe", {}))

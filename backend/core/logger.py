import json
import logging
import time
from typing import Any

logger = logging.getLogger("metrics.events")

# Snapshot bodies are large and repeat every tick; log their shape only.
_PAYLOAD_KEYS = {"metrics", "snapshot", "data", "mood_timeline", "emotions"}


def _summarize_payload(value: Any) -> dict:
	if isinstance(value, dict):
		return {"redacted": True, "fields": len(value)}
	if isinstance(value, (list, tuple)):
		return {"redacted": True, "items": len(value)}
	text = value if isinstance(value, str) else json.dumps(value, default=str)
	return {"redacted": True, "length": len(text)}


def _sanitize_value(key: str, value: Any) -> Any:
	if str(key or "").lower() in _PAYLOAD_KEYS:
		return _summarize_payload(value)
	if isinstance(value, (str, int, float, bool)) or value is None:
		return value
	if isinstance(value, dict):
		return {str(k): _sanitize_value(str(k), v) for k, v in value.items()}
	if isinstance(value, (list, tuple, set)):
		return [_sanitize_value("", item) for item in value]
	return str(value)


def log_event(component: str, event: str, session_id: str, level: int = logging.INFO, **kwargs) -> None:
	if not logger.isEnabledFor(level):
		return
	payload = {
		"ts_ms": int(time.time() * 1000),
		"component": str(component or "metrics"),
		"event": str(event or "unknown"),
		"session_id": str(session_id or ""),
	}
	payload.update({str(k): _sanitize_value(str(k), v) for k, v in kwargs.items()})
	logger.log(level, json.dumps(payload, ensure_ascii=False, default=str))

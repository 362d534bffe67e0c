import json
import logging
from enum import Enum
import time
from typing import Any

logger = logging.getLogger("mockprep.events")

# candidate speech and code never reach the log stream
REDACTED_FIELDS = frozenset({"text", "transcript", "code", "code_buffer", "chunk", "answer_buffer"})
MAX_FIELD_CHARS = 256


def _redact(value: Any) -> dict:
	text = str(value or "")
	return {
		"redacted": True,
		"length": len(text),
		"words": len(text.split()),
	}


def _clean(key: str, value: Any) -> Any:
	name = str(key or "").lower()
	if name in REDACTED_FIELDS:
		return _redact(value)
	if isinstance(value, Enum):
		return value.value
	if isinstance(value, str):
		return value if len(value) <= MAX_FIELD_CHARS else f"{value[:MAX_FIELD_CHARS]}..."
	if isinstance(value, (int, float, bool)) or value is None:
		return value
	if isinstance(value, dict):
		return {str(k): _clean(str(k), v) for k, v in value.items()}
	if isinstance(value, (list, tuple, set)):
		return [_clean(name, item) for item in value]
	return str(value)


def log_event(component: str, event: str, session_id: str, level: int = logging.INFO, **fields) -> None:
	"""One JSON line per session/ledger lifecycle event."""
	if not logger.isEnabledFor(level):
		return
	payload = {
		"ts": round(time.time(), 3),
		"component": str(component or "engine"),
		"event": str(event or "unknown"),
		"session_id": str(session_id or ""),
	}
	payload.update({str(k): _clean(str(k), v) for k, v in fields.items()})
	logger.log(level, json.dumps(payload, ensure_ascii=False, default=str, sort_keys=True))

import logging
import re
import sys
from typing import Any, Dict, Mapping, Optional

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout)
    ]
)

logger = logging.getLogger("autolister")

_SENSITIVE_KEYS = ("authorization", "token", "secret", "password", "key")
_QUERY_KEY_RE = re.compile(r"([?&](?:key|api_key|token)=)[^&\s]+", re.IGNORECASE)


def _is_sensitive(name: str) -> bool:
    lowered = name.lower()
    return any(marker in lowered for marker in _SENSITIVE_KEYS)


def mask_headers(headers: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """Return a copy of headers with credentials replaced by a placeholder."""
    if not headers:
        return {}
    masked: Dict[str, Any] = {}
    for key, value in headers.items():
        if _is_sensitive(str(key)):
            masked[key] = "***"
        else:
            masked[key] = value
    return masked


def sanitize_payload(data: Any) -> Any:
    """Recursively mask credential-looking keys in a JSON-like payload."""
    if isinstance(data, dict):
        return {
            k: ("***" if _is_sensitive(str(k)) else sanitize_payload(v))
            for k, v in data.items()
        }
    if isinstance(data, list):
        return [sanitize_payload(item) for item in data]
    return data


def mask_url(url: str) -> str:
    """Strip api keys embedded in query strings (Keepa puts the key there)."""
    return _QUERY_KEY_RE.sub(r"\1***", url or "")

import json
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import SecretStr


class EnhancedJSONEncoder(json.JSONEncoder):
    def default(self, obj):
        if isinstance(obj, Decimal):
            return float(obj)
        elif isinstance(obj, (datetime, date)):
            return obj.isoformat()
        elif isinstance(obj, Enum):
            return obj.value
        elif isinstance(obj, SecretStr):
            return str(obj)
        elif isinstance(obj, (set, frozenset)):
            return sorted(obj)
        # Handle Pydantic models and other objects with model_dump method
        elif hasattr(obj, "model_dump"):
            return obj.model_dump(mode="json")
        return super().default(obj)


def dumps(obj: Any, **kwargs) -> str:
    """JSON dumps with Decimal, datetime and Enum support."""
    return json.dumps(obj, cls=EnhancedJSONEncoder, **kwargs)


def canonical_dumps(obj: Any) -> str:
    """Deterministic JSON used for signing: sorted keys, no whitespace."""
    return json.dumps(obj, cls=EnhancedJSONEncoder, sort_keys=True, separators=(",", ":"))

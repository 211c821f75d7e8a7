"""Parameter parsing shared by the operator blueprints."""
from typing import Any, Dict, Optional

from flask import request

from fiscal_sync.exceptions import BusinessLogicError

TRUE_VALUES = ('1', 'true', 'yes', 'on')


def request_params() -> Dict[str, Any]:
    """Query string merged with the JSON body (body wins)."""
    data = request.get_json(silent=True) or {}
    merged = dict(request.args.items())
    if isinstance(data, dict):
        merged.update(data)
    return merged


def int_param(params: Dict[str, Any], name: str, required: bool = False) -> Optional[int]:
    value = params.get(name)
    if value is None or value == '':
        if required:
            raise BusinessLogicError(f"'{name}' is required")
        return None
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        raise BusinessLogicError(f"'{name}' must be an integer")
    if parsed < 0:
        raise BusinessLogicError(f"'{name}' must not be negative")
    return parsed


def bool_param(params: Dict[str, Any], name: str, default: bool = False) -> bool:
    value = params.get(name)
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in TRUE_VALUES

"""Plain-dict views of engine records for the CLI, web API and MCP tools."""

from dataclasses import fields, is_dataclass
from datetime import date, datetime

from connekt_fulfillment.core.terms import ContractTerms


def to_dict(obj):
    """Recursively turn dataclasses into JSON-ready dicts.

    Contract terms render in their wire format; datetimes as ISO strings.
    Amounts stay in minor units.
    """
    if isinstance(obj, ContractTerms):
        return obj.to_wire()
    if is_dataclass(obj) and not isinstance(obj, type):
        return {f.name: to_dict(getattr(obj, f.name)) for f in fields(obj)}
    if isinstance(obj, (list, tuple)):
        return [to_dict(v) for v in obj]
    if isinstance(obj, dict):
        return {k: to_dict(v) for k, v in obj.items()}
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    return obj

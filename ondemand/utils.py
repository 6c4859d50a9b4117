# ondemand/utils.py
from typing import Any, Dict, Optional
from enum import Enum
from bson import ObjectId

def to_id(doc: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Convierte _id -> id (str) y todos los ObjectIds anidados a strings.
    Los datetime se dejan tal cual, los modelos pydantic ya los validan.
    Si doc es None, devuelve {}.
    """
    if doc is None:
        return {}
    d = dict(doc)

    if "_id" in d:
        d["id"] = str(d.pop("_id"))

    for key, value in d.items():
        if isinstance(value, ObjectId):
            d[key] = str(value)
        elif isinstance(value, dict):
            d[key] = to_id(value)
        elif isinstance(value, list):
            d[key] = [
                str(item) if isinstance(item, ObjectId)
                else to_id(item) if isinstance(item, dict)
                else item
                for item in value
            ]

    return d

def to_plain(value: Any) -> Any:
    """Quita los Enum de un dict/list para que BSON pueda codificarlo."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: to_plain(v) for k, v in value.items()}
    if isinstance(value, list):
        return [to_plain(v) for v in value]
    return value

from pydantic import BaseModel


def ok(data=None):
    """Standard success envelope; pydantic models (or lists of them) are dumped to JSON-safe dicts."""
    if isinstance(data, BaseModel):
        data = data.model_dump(mode="json")
    elif isinstance(data, list):
        data = [d.model_dump(mode="json") if isinstance(d, BaseModel) else d for d in data]
    return {"ok": True, "data": data, "error": None}


def error(code: str = "internal_error", message: str = "An internal error occurred"):
    """Standard error envelope."""
    return {"ok": False, "data": None, "error": {"code": code, "message": message}}

"""
Encoding of cached values.

Records are pickled. A lookup that resolved to nothing is stored as the
``CACHED_NIL`` marker so negative results can be cached without looking
like a miss.
"""

import io
import pickle
from typing import Any, Optional

from shared.errors import DecodingError
from shared.logging import get_logger
from ..models import TypeRegistry

CACHED_NIL = b"\x00IDC:nil"

logger = get_logger("identity_cache.serialization")


class _Absent:
    """Decoded form of ``CACHED_NIL``."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self):
        return "ABSENT"

    def __bool__(self):
        return False


ABSENT = _Absent()


def encode(value: Any) -> bytes:
    """Encode a value for the backend; ``None`` becomes ``CACHED_NIL``."""
    if value is None:
        return CACHED_NIL
    return pickle.dumps(value, protocol=pickle.HIGHEST_PROTOCOL)


class _RegistryUnpickler(pickle.Unpickler):
    """Unpickler that falls back to registered models for classes it cannot import."""

    def __init__(self, data: bytes, registry: TypeRegistry):
        super().__init__(io.BytesIO(data))
        self.registry = registry

    def find_class(self, module: str, name: str):
        try:
            return super().find_class(module, name)
        except (ImportError, AttributeError):
            model = self.registry.model_named(name)
            if model is None:
                raise
            logger.warning("Resolved cached class through registry", module=module, name=name,
                           resolved=f"{model.__module__}.{model.__qualname__}")
            return model


def decode(raw: Optional[Any], registry: TypeRegistry) -> Any:
    """Decode a value read from the backend.

    Returns ``None`` for a miss and ``ABSENT`` for a cached negative result.
    Values that are not bytes are taken as already decoded. When the strict
    decode cannot resolve a class, one pass through the registry is tried;
    if that also fails the original error is raised as ``DecodingError``.
    """
    if raw is None:
        return None
    if raw == CACHED_NIL:
        return ABSENT
    if not isinstance(raw, (bytes, bytearray)):
        return raw

    try:
        return pickle.loads(raw)
    except (ImportError, AttributeError) as original:
        try:
            return _RegistryUnpickler(bytes(raw), registry).load()
        except Exception:
            raise DecodingError(f"Could not decode cached value: {original}",
                                {"error": type(original).__name__}) from original
    except (pickle.UnpicklingError, EOFError, ValueError, TypeError) as e:
        raise DecodingError(f"Could not decode cached value: {e}", {"error": type(e).__name__}) from e

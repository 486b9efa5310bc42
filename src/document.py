"""
Structured Document - Typed path lookups over schemaless cluster objects.

Custom resources and workloads come back from the API server as nested
dicts of unknown shape. Document wraps such a dict and exposes safe,
dot-path accessors that return typed optional values instead of raising
on a missing key or an unexpected type.
"""

from typing import Any, Dict, List, Optional


class MalformedResourceError(Exception):
    """Raised when a watched or listed object cannot be decoded."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


def _split(path: str) -> List[str]:
    return [part for part in path.split(".") if part]


class Document:
    """
    Read-only view over a nested mapping addressed by dot paths.

    Example::

        doc = Document({"spec": {"redis": {"replicas": 3}}})
        doc.get_int("spec.redis.replicas")  # 3
        doc.get_str("status.phase")  # None
    """

    def __init__(self, data: Optional[Dict[str, Any]] = None):
        self._data: Dict[str, Any] = data if isinstance(data, dict) else {}

    @classmethod
    def from_object(cls, obj: Any) -> "Document":
        """
        Build a Document from a raw watch/list object.

        Raises:
            MalformedResourceError: If the object is not a mapping.
        """
        if isinstance(obj, Document):
            return obj
        if not isinstance(obj, dict):
            raise MalformedResourceError(
                f"Expected a mapping, got {type(obj).__name__}"
            )
        return cls(obj)

    @property
    def raw(self) -> Dict[str, Any]:
        """The underlying mapping."""
        return self._data

    def _lookup(self, path: str) -> Any:
        node: Any = self._data
        for part in _split(path):
            if not isinstance(node, dict) or part not in node:
                return None
            node = node[part]
        return node

    def has(self, path: str) -> bool:
        """Return True if every segment of the path exists."""
        node: Any = self._data
        for part in _split(path):
            if not isinstance(node, dict) or part not in node:
                return False
            node = node[part]
        return True

    def get(self, path: str, default: Any = None) -> Any:
        value = self._lookup(path)
        return default if value is None else value

    def get_str(self, path: str) -> Optional[str]:
        """Return the string at path, or None if absent or not a string."""
        value = self._lookup(path)
        return value if isinstance(value, str) else None

    def get_int(self, path: str) -> Optional[int]:
        """
        Return the integer at path, or None if absent or not integral.

        Booleans are rejected; floats with an integral value are accepted
        since JSON decoders may produce them for counts.
        """
        value = self._lookup(path)
        if isinstance(value, bool):
            return None
        if isinstance(value, int):
            return value
        if isinstance(value, float) and value.is_integer():
            return int(value)
        return None

    def get_list(self, path: str) -> Optional[List[Any]]:
        value = self._lookup(path)
        return value if isinstance(value, list) else None

    def get_map(self, path: str) -> Optional[Dict[str, Any]]:
        value = self._lookup(path)
        return value if isinstance(value, dict) else None

    def sub(self, path: str) -> Optional["Document"]:
        """Return a Document rooted at path, or None if it is not a mapping."""
        value = self.get_map(path)
        return Document(value) if value is not None else None

    # Kubernetes metadata shortcuts

    @property
    def name(self) -> str:
        return self.get_str("metadata.name") or ""

    @property
    def namespace(self) -> str:
        return self.get_str("metadata.namespace") or ""

    @property
    def resource_version(self) -> str:
        return self.get_str("metadata.resourceVersion") or ""

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Document):
            return self._data == other._data
        return NotImplemented

    def __repr__(self) -> str:
        if self.name:
            return f"Document({self.namespace}/{self.name})"
        return f"Document({len(self._data)} keys)"

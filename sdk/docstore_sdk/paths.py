"""
Document and collection addressing.

Paths have the form:

    projects/<project>/databases/<database>/documents/<collection>/<id>[/<collection>/<id>]*

A *parent path* is either the documents root or a full document path; a
collection is always addressed as (parent path, collection id).

Invariants:
    - Document ids never contain "/" and are at most 1500 characters
    - A parent path never ends with a dangling collection segment
"""

from __future__ import annotations

import secrets
import string

from .errors import ValidationError

MAX_DOCUMENT_ID_LENGTH = 1500
AUTO_ID_LENGTH = 20

_AUTO_ID_ALPHABET = string.ascii_letters + string.digits


def database_path(project_id: str, database_id: str = "(default)") -> str:
    """Root path of a database."""
    if not project_id:
        raise ValidationError("project_id must not be empty", field_name="project_id")
    if not database_id:
        raise ValidationError("database_id must not be empty", field_name="database_id")
    return f"projects/{project_id}/databases/{database_id}"


def documents_path(database: str) -> str:
    """Documents root for a database path."""
    return f"{database}/documents"


def _check_segment(value: str, what: str) -> None:
    if not value:
        raise ValidationError(f"{what} must not be empty", field_name=what)
    if "/" in value:
        raise ValidationError(f"{what} must not contain '/': {value!r}", field_name=what)
    if len(value) > MAX_DOCUMENT_ID_LENGTH:
        raise ValidationError(
            f"{what} exceeds {MAX_DOCUMENT_ID_LENGTH} characters", field_name=what
        )


def safe_document_path(parent: str, collection_id: str, document_id: str) -> str:
    """Build a document path, rejecting ids that would escape their segment.

    Raises:
        ValidationError: If the collection or document id is invalid
    """
    _check_segment(collection_id, "collection_id")
    _check_segment(document_id, "document_id")
    return f"{parent}/{collection_id}/{document_id}"


def collection_path(parent: str, collection_id: str) -> str:
    """Full path of a collection under a parent."""
    _check_segment(collection_id, "collection_id")
    return f"{parent}/{collection_id}"


def split_document_path(path: str) -> tuple[str, str]:
    """Split a document path into (collection path, document id)."""
    collection, sep, document_id = path.rpartition("/")
    if not sep or not collection or not document_id:
        raise ValidationError(f"Not a document path: {path!r}", field_name="path")
    return collection, document_id


def document_id(path: str) -> str:
    """Last segment of a document path."""
    return split_document_path(path)[1]


def is_document_path(path: str, root: str) -> bool:
    """Whether path names a document (even number of segments below root)."""
    if not path.startswith(root + "/"):
        return False
    relative = path[len(root) + 1 :].split("/")
    return len(relative) % 2 == 0 and all(relative)


def validate_parent_path(parent: str, root: str) -> str:
    """Check that parent is the documents root or a full document path.

    Raises:
        ValidationError: For partial paths ending at a collection segment
    """
    if parent == root:
        return parent
    if not is_document_path(parent, root):
        raise ValidationError(
            f"Parent path must be the documents root or a document path: {parent!r}",
            field_name="parent",
        )
    return parent


def generate_document_id() -> str:
    """Random 20-character document id."""
    return "".join(secrets.choice(_AUTO_ID_ALPHABET) for _ in range(AUTO_ID_LENGTH))


class ParentPathBuilder:
    """Builds nested parent paths one (collection, document) pair at a time.

    Example:
        >>> root = "projects/p/databases/(default)/documents"
        >>> str(ParentPathBuilder(root).at("users", "u1").at("orders", "o7"))
        'projects/p/databases/(default)/documents/users/u1/orders/o7'
    """

    def __init__(self, path: str) -> None:
        self._path = path

    def at(self, collection_id: str, document_id: str) -> ParentPathBuilder:
        """Descend into a document of a sub-collection."""
        return ParentPathBuilder(safe_document_path(self._path, collection_id, document_id))

    @property
    def path(self) -> str:
        return self._path

    def __str__(self) -> str:
        return self._path

    def __repr__(self) -> str:
        return f"ParentPathBuilder({self._path!r})"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, ParentPathBuilder):
            return self._path == other._path
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self._path)

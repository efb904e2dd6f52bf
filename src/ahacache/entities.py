"""Entity-type registry.

Each supported remote record kind is registered once here with its table,
its denormalized filter columns, and how to fetch and upsert it. The sync
loop, the store, and the hybrid reader all dispatch through ``ENTITY_KINDS``
instead of switching on the type name.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from ahacache.core import CacheStore
    from ahacache.remote import ListResult, RemoteEntitySource

Extractor = Callable[[Mapping[str, Any]], Any]


class UnsupportedEntityTypeError(ValueError):
    """Raised for an entity type name that is not in the registry."""

    def __init__(self, entity_type: str) -> None:
        self.entity_type = entity_type
        super().__init__(f"Unsupported entity type: {entity_type}")


# ---------------------------------------------------------------------------
# Field extractors
# ---------------------------------------------------------------------------


def _field(key: str) -> Extractor:
    def extract(record: Mapping[str, Any]) -> Any:
        value = record.get(key)
        if isinstance(value, (dict, list)):
            return None
        return value

    return extract


def _ref(key: str) -> Extractor:
    """Id of a nested reference (``{"product": {"id": ...}}``) or a flat ``<key>_id``."""

    def extract(record: Mapping[str, Any]) -> Any:
        nested = record.get(key)
        if isinstance(nested, dict):
            return nested.get("id")
        return record.get(f"{key}_id")

    return extract


def _named(key: str) -> Extractor:
    """Display name of a nested object such as ``workflow_status``."""

    def extract(record: Mapping[str, Any]) -> Any:
        value = record.get(key)
        if isinstance(value, dict):
            return value.get("name")
        return value

    return extract


def _rich_text(key: str) -> Extractor:
    """Aha returns descriptions as ``{"body": "<html>"}``; store the body."""

    def extract(record: Mapping[str, Any]) -> Any:
        value = record.get(key)
        if isinstance(value, dict):
            return value.get("body")
        return value

    return extract


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Column:
    name: str
    sql_type: str
    extract: Extractor


@dataclass(frozen=True)
class EntityKind:
    """One registered remote record kind."""

    name: str
    singular: str
    columns: tuple[Column, ...]
    text_columns: tuple[str, ...] = ("name", "description")

    @property
    def table(self) -> str:
        return self.name

    @property
    def column_names(self) -> tuple[str, ...]:
        return tuple(c.name for c in self.columns)

    def denormalize(self, record: Mapping[str, Any]) -> dict[str, Any]:
        return {c.name: c.extract(record) for c in self.columns}

    async def fetch(
        self,
        source: RemoteEntitySource,
        *,
        filters: Mapping[str, Any] | None,
        page: int,
        page_size: int,
    ) -> ListResult:
        return await source.list(self.name, dict(filters or {}), page, page_size)

    def upsert(self, store: CacheStore, record: Mapping[str, Any]) -> str:
        return store.upsert_entity(self.name, record)


_TIMESTAMPS = (
    Column("created_at", "TEXT", _field("created_at")),
    Column("updated_at", "TEXT", _field("updated_at")),
)


def _kind(name: str, singular: str, *columns: Column, text_columns: tuple[str, ...] = ("name", "description")) -> EntityKind:
    return EntityKind(name=name, singular=singular, columns=(*columns, *_TIMESTAMPS), text_columns=text_columns)


_NAME = Column("name", "TEXT", _field("name"))
_DESCRIPTION = Column("description", "TEXT", _rich_text("description"))
_REFERENCE_NUM = Column("reference_num", "TEXT", _field("reference_num"))
_WORKFLOW_STATUS = Column("workflow_status", "TEXT", _named("workflow_status"))
_PROGRESS = Column("progress", "REAL", _field("progress"))
_PRODUCT_ID = Column("product_id", "TEXT", _ref("product"))

ENTITY_KINDS: dict[str, EntityKind] = {
    kind.name: kind
    for kind in (
        _kind(
            "products",
            "product",
            _NAME,
            _DESCRIPTION,
            Column("reference_prefix", "TEXT", _field("reference_prefix")),
        ),
        _kind(
            "features",
            "feature",
            _NAME,
            _DESCRIPTION,
            _REFERENCE_NUM,
            Column("feature_type", "TEXT", _field("feature_type")),
            _WORKFLOW_STATUS,
            _PROGRESS,
            Column("score", "REAL", _field("score")),
            _PRODUCT_ID,
            Column("release_id", "TEXT", _ref("release")),
            Column("epic_id", "TEXT", _ref("epic")),
            Column("assigned_to_user_id", "TEXT", _ref("assigned_to_user")),
        ),
        _kind(
            "ideas",
            "idea",
            _NAME,
            _DESCRIPTION,
            _REFERENCE_NUM,
            _WORKFLOW_STATUS,
            Column("category", "TEXT", _named("category")),
            Column("score", "REAL", _field("score")),
            _PRODUCT_ID,
            Column("created_by_user_id", "TEXT", _ref("created_by_user")),
            Column("promoted_to_feature_id", "TEXT", _ref("feature")),
        ),
        _kind(
            "epics",
            "epic",
            _NAME,
            _DESCRIPTION,
            _REFERENCE_NUM,
            _WORKFLOW_STATUS,
            _PROGRESS,
            _PRODUCT_ID,
            Column("release_id", "TEXT", _ref("release")),
            Column("initiative_id", "TEXT", _ref("initiative")),
        ),
        _kind(
            "initiatives",
            "initiative",
            _NAME,
            _DESCRIPTION,
            _REFERENCE_NUM,
            _WORKFLOW_STATUS,
            _PROGRESS,
            _PRODUCT_ID,
            Column("assigned_to_user_id", "TEXT", _ref("assigned_to_user")),
        ),
        _kind(
            "releases",
            "release",
            _NAME,
            _DESCRIPTION,
            _REFERENCE_NUM,
            _WORKFLOW_STATUS,
            Column("start_date", "TEXT", _field("start_date")),
            Column("release_date", "TEXT", _field("release_date")),
            _PRODUCT_ID,
        ),
        _kind(
            "goals",
            "goal",
            _NAME,
            _DESCRIPTION,
            Column("category", "TEXT", _named("category")),
            _PROGRESS,
            _PRODUCT_ID,
        ),
        _kind(
            "users",
            "user",
            _NAME,
            Column("email", "TEXT", _field("email")),
            Column("first_name", "TEXT", _field("first_name")),
            Column("last_name", "TEXT", _field("last_name")),
            text_columns=("name", "email"),
        ),
        _kind(
            "comments",
            "comment",
            Column("body", "TEXT", _rich_text("body")),
            Column("commentable_type", "TEXT", _field("commentable_type")),
            Column("commentable_id", "TEXT", _field("commentable_id")),
            Column("user_id", "TEXT", _ref("user")),
            text_columns=("body",),
        ),
    )
}

_ALIASES: dict[str, str] = {kind.singular: kind.name for kind in ENTITY_KINDS.values()}


def resolve_entity_kind(entity_type: str) -> EntityKind:
    """Look up a kind by table name ("features") or singular tag ("feature")."""
    key = entity_type.strip().lower() if isinstance(entity_type, str) else ""
    kind = ENTITY_KINDS.get(key) or ENTITY_KINDS.get(_ALIASES.get(key, ""))
    if kind is None:
        raise UnsupportedEntityTypeError(str(entity_type))
    return kind


def supported_entity_types() -> list[str]:
    return list(ENTITY_KINDS)

"""
Records: schema-bound data instances.

A record owns its default-value resolution and the evaluation of its own
computed fields. Lookup and summary fields need relationship data and are
left to the relationship engine.
"""

from __future__ import annotations

import logging
import random
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from relstore.runtime.config import DEFAULT_MAX_COMPUTE_DEPTH
from relstore.runtime.errors import DbResult
from relstore.runtime.formula import ExpressionEvaluator, FormulaEvaluator
from relstore.runtime.identity import Identity, current_user_id
from relstore.runtime.schema_store import LINK_MODEL_ID, ModelHandle, SchemaStore
from relstore.specs.field import FieldSpec
from relstore.specs.model import ModelSpec

if TYPE_CHECKING:
    from relstore.runtime.backends.base import Backend

logger = logging.getLogger(__name__)


def new_id() -> str:
    """Generate a record id."""
    return uuid4().hex


def short_uid() -> str:
    return uuid4().hex[:8]


def timestamp(now: datetime | None = None) -> str:
    """ISO timestamp used for createdAt/updatedAt/deletedAt."""
    return (now or datetime.now()).isoformat(timespec="milliseconds")


# =============================================================================
# Default Values
# =============================================================================


def resolve_default_value(
    default: Any,
    identity: Identity | None = None,
    now: datetime | None = None,
) -> Any:
    """
    Resolve a default value, substituting tokens.

    Tokens, evaluated at creation time only:
    - ``today+N`` / ``today-N``: date N days from today
    - ``username``, ``today``, ``now``, ``unid``: first match only
    - ``{YYYY}{MM}{DD}{hh}{mm}{ss}{XX}{NN}`` templates
    """
    if not isinstance(default, str):
        return default

    now = now or datetime.now()
    value = default

    if "today+" in value or "today-" in value:
        offset = value.split("today", 1)[1]
        try:
            value = (now + timedelta(days=int(offset))).date().isoformat()
        except ValueError:
            pass

    if "username" in value:
        value = value.replace("username", current_user_id(identity) or "", 1)
    elif "today" in value:
        value = value.replace("today", now.date().isoformat(), 1)
    elif "now" in value:
        value = value.replace("now", now.strftime("%H:%M"), 1)
    elif "unid" in value:
        value = value.replace("unid", short_uid().upper(), 1)
    else:
        replacements = {
            "{YYYY}": f"{now.year}",
            "{MM}": f"{now.month:02d}",
            "{DD}": f"{now.day:02d}",
            "{hh}": f"{now.hour:02d}",
            "{mm}": f"{now.minute:02d}",
            "{ss}": f"{now.second:02d}",
        }
        for token, replacement in replacements.items():
            value = value.replace(token, replacement, 1)
        if "{XX}" in value:
            value = value.replace("{XX}", short_uid().upper()[:2], 1)
        if "{NN}" in value:
            value = value.replace("{NN}", f"{random.randint(0, 99):02d}", 1)

    return value


# =============================================================================
# Record
# =============================================================================


class Record:
    """
    A data instance bound to a model through its handle.

    The model snapshot is re-fetched through the handle on every use, so a
    record always sees the current schema.
    """

    def __init__(
        self,
        model: ModelHandle,
        data: dict[str, Any] | None = None,
        *,
        formula_evaluator: FormulaEvaluator | None = None,
        identity: Identity | None = None,
        max_depth: int = DEFAULT_MAX_COMPUTE_DEPTH,
    ) -> None:
        self.handle = model
        self.data: dict[str, Any] = dict(data or {})
        if not self.data.get("id"):
            self.data["id"] = new_id()
        self.formula_evaluator = formula_evaluator or ExpressionEvaluator()
        self.identity = identity
        self.max_depth = max_depth

    def __repr__(self) -> str:
        return f"Record({self.model_id!r}, {self.id!r})"

    def __getitem__(self, field_id: str) -> Any:
        return self.data[field_id]

    def __contains__(self, field_id: object) -> bool:
        return field_id in self.data

    def get(self, field_id: str, default: Any = None) -> Any:
        return self.data.get(field_id, default)

    @property
    def id(self) -> str:
        return str(self.data["id"])

    @property
    def model_id(self) -> str:
        return self.handle.model_id

    @property
    def model(self) -> ModelSpec:
        return self.handle.get()

    # =========================================================================
    # Local computation
    # =========================================================================

    def init_default_values(self, now: datetime | None = None) -> None:
        """Fill missing fields with their (token-resolved) default values."""
        for f in self.model.active_fields:
            if f.id in self.data or f.default_value is None or f.default_value == "":
                continue
            # 0 is a legitimate default
            self.data[f.id] = resolve_default_value(f.default_value, self.identity, now)

    def compute_field(self, field: FieldSpec) -> Any:
        """Evaluate one computed field; formula errors are logged and yield ``""``."""
        try:
            return self.formula_evaluator.execute(
                field.formula or "", self.data, self.model.active_fields
            )
        except Exception:
            logger.exception(
                "Formula evaluation failed for %s.%s on record %s",
                self.model_id,
                field.id,
                self.id,
            )
            return ""

    def compute_fields(self, changed_field_id: str | None = None, depth: int = 0) -> list[str]:
        """
        Re-evaluate computed fields after a change.

        Evaluates every computed field whose formula reads ``changed_field_id``
        (or all of them when None). A field is assigned only when its value
        actually differs, and each assignment recurses with that field as the
        new change. Recursion stops past ``max_depth``.

        Returns:
            Ids of the fields whose value changed, in assignment order
        """
        if depth > self.max_depth:
            logger.warning(
                "Computed field depth cap reached on %s/%s (changed=%s)",
                self.model_id,
                self.id,
                changed_field_id,
            )
            return []
        depth += 1

        changed: list[str] = []
        model = self.model
        for field_id in model.computed_field_ids:
            if field_id == changed_field_id:
                continue
            f = model.get_field(field_id)
            if f is None or f.deleted or f.is_derived or not f.is_formula:
                continue
            if changed_field_id is not None and changed_field_id not in f.formula_source_field_ids:
                continue

            value = self.compute_field(f)
            if value is not None and value != self.data.get(field_id):
                self.data[field_id] = value
                changed.append(field_id)
                for nested in self.compute_fields(field_id, depth):
                    if nested not in changed:
                        changed.append(nested)
        return changed

    def set_field(self, field_id: str, value: Any) -> dict[str, Any]:
        """
        Assign a value locally and propagate to same-record computed fields.

        Returns:
            The resulting update (the field plus every recomputed field)
        """
        self.data[field_id] = value
        update = {field_id: value}
        for changed in self.compute_fields(field_id):
            update[changed] = self.data[changed]
        return update

    def has_changed(self, update: dict[str, Any]) -> bool:
        return any(self.data.get(k) != v for k, v in update.items())

    def get_data(self, use_labels: bool = False, projection: list[str] | None = None) -> dict[str, Any]:
        """Plain dict of the record's values."""
        data = dict(self.data)
        if projection:
            data = {k: v for k, v in data.items() if k in projection or k == "id"}
        if not use_labels:
            return data
        model = self.model
        labelled: dict[str, Any] = {}
        for key, value in data.items():
            f = model.get_field(key)
            labelled[f.display_label if f and f.label else key] = value
        return labelled

    # =========================================================================
    # Persistence (delegates to a backend)
    # =========================================================================

    async def save(self, db: Backend) -> DbResult:
        return await db.insert_one(self.model_id, self.get_data())

    async def update(self, db: Backend, update: dict[str, Any], deep: bool = True) -> DbResult:
        """
        Write ``update`` through the backend.

        Deep updates (the default) propagate to computed, lookup and summary
        fields of this and foreign records. A shallow update skips cascade.
        """
        if not self.has_changed(update):
            return DbResult.success(self.get_data())

        if deep:
            result = await db.update_one_deep(self.model_id, self.id, update)
        else:
            result = await db.update_one(self.model_id, self.id, update)
        if result.ok:
            self.data.update(update)
            if deep:
                refreshed = await db.find_one(self.model_id, self.id)
                if refreshed.ok and refreshed.data:
                    self.data = dict(refreshed.data)
        return result

    async def delete(self, db: Backend, send_to_trash: bool = False) -> DbResult:
        return await db.delete_one(self.model_id, self.id, send_to_trash=send_to_trash)

    async def link_to(
        self,
        db: Backend,
        foreign: Record,
        local_link_field_id: str,
        foreign_link_field_id: str | None = None,
    ) -> DbResult:
        """Create a link record joining this record to ``foreign`` and propagate."""
        if foreign_link_field_id is None:
            local = self.model.get_field(local_link_field_id)
            foreign_link_field_id = local.link.field_id if local and local.link else None

        link = {
            "id": new_id(),
            "mX": self.model_id,
            "rX": self.id,
            "fX": local_link_field_id,
            "mY": foreign.model_id,
            "rY": foreign.id,
            "fY": foreign_link_field_id,
        }
        inserted = await db.insert_one(LINK_MODEL_ID, link)
        if not inserted.ok:
            return inserted
        return await db.update_link(link)

    async def delete_link(self, db: Backend, link_id: str) -> DbResult:
        """Delete a link record and recompute both endpoints without it."""
        found = await db.find_one(LINK_MODEL_ID, link_id)
        if not found.ok or not found.data:
            return found if not found.ok else DbResult.success(None)
        link = found.data

        deleted = await db.delete_one(LINK_MODEL_ID, link_id)
        if not deleted.ok:
            return deleted
        return await db.update_link(link)

    async def get_links(self, db: Backend, field_id: str | None = None) -> list[dict[str, Any]]:
        """Link records touching this record, optionally through one link field."""
        x_side: dict[str, Any] = {"rX": self.id}
        y_side: dict[str, Any] = {"rY": self.id}
        if field_id:
            x_side["fX"] = field_id
            y_side["fY"] = field_id
        result = await db.find(
            LINK_MODEL_ID,
            {"filter": {"$or": [x_side, y_side]}, "filterSyntax": "mongo"},
        )
        return list(result.data or []) if result.ok else []

    async def get_linked_records(self, db: Backend, field_id: str) -> list[dict[str, Any]]:
        """Records joined to this one through the link field ``field_id``."""
        targets: dict[str, list[str]] = {}
        for link in await self.get_links(db, field_id):
            if link.get("rX") == self.id and link.get("fX") == field_id:
                targets.setdefault(link["mY"], []).append(link["rY"])
            elif link.get("rY") == self.id and link.get("fY") == field_id:
                targets.setdefault(link["mX"], []).append(link["rX"])

        records: list[dict[str, Any]] = []
        for model_id, ids in targets.items():
            found = await db.find_by_id(model_id, ids)
            if found.ok:
                records.extend(found.data or [])
        return records


# =============================================================================
# Factory
# =============================================================================


def create_record(
    schema: SchemaStore,
    model_id: str,
    data: dict[str, Any] | None = None,
    inherit: bool = False,
    *,
    identity: Identity | None = None,
    formula_evaluator: FormulaEvaluator | None = None,
    max_depth: int = DEFAULT_MAX_COMPUTE_DEPTH,
    now: datetime | None = None,
) -> Record:
    """
    Instantiate a record of ``model_id``.

    Without data (or with ``inherit``) the record is fresh: it gets a new
    id, ``createdAt``/``createdBy`` stamps, default values and a full
    computed-field pass; ``data`` is then layered on top when inheriting.
    With data alone, the record wraps it as-is.
    """
    handle = schema.handle(model_id)
    kwargs: dict[str, Any] = {
        "formula_evaluator": formula_evaluator or schema.formula_evaluator,
        "identity": identity,
        "max_depth": max_depth,
    }

    if data and not inherit:
        return Record(handle, data, **kwargs)

    record = Record(
        handle,
        {
            "id": new_id(),
            "createdAt": timestamp(now),
            "createdBy": current_user_id(identity),
        },
        **kwargs,
    )
    record.init_default_values(now)
    record.compute_fields()

    if inherit and data:
        record.data.update(data)
        record.compute_fields()
    return record


"""
Schema store for relstore.

Owns every model's field catalog and the dependency index between fields.
Models live in an arena keyed by id; records and collections hold a
``ModelHandle`` and re-fetch the current snapshot on every use. Snapshots
are frozen: schema edits build a new snapshot and swap it in.

The dependency index (source field -> lookup/summary fields reading it) is
rebuilt wholesale by ``resolve_relationships()``, so running it twice gives
the same index.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from uuid import uuid4

from relstore.runtime.errors import NotFoundError, SchemaInconsistency, ValidationError
from relstore.runtime.formula import ExpressionEvaluator, FormulaEvaluator, find_tags, resolve_tag
from relstore.specs.field import (
    Dependent,
    FieldSpec,
    FieldType,
    LinkSpec,
    SummaryOperation,
)
from relstore.specs.model import ModelSpec

logger = logging.getLogger(__name__)

# Rounds of type derivation, so lookups of lookups settle
MAX_RESOLUTION_PASSES = 5

LINK_MODEL_ID = "link"
TRASH_MODEL_ID = "trash"

LINK_MODEL = ModelSpec(
    id=LINK_MODEL_ID,
    name="Link",
    fields=[
        FieldSpec(id="mX", label="Model X"),
        FieldSpec(id="rX", label="Record X"),
        FieldSpec(id="fX", label="Field X"),
        FieldSpec(id="mY", label="Model Y"),
        FieldSpec(id="rY", label="Record Y"),
        FieldSpec(id="fY", label="Field Y"),
        FieldSpec(id="auto", label="Automatic", type=FieldType.CHECKBOX),
    ],
)

TRASH_MODEL = ModelSpec(
    id=TRASH_MODEL_ID,
    name="Trash",
    fields=[
        FieldSpec(id="sourceModelId", label="Source model"),
        FieldSpec(id="deletedAt", label="Deleted at", type=FieldType.DATE),
        FieldSpec(id="deletedBy", label="Deleted by", type=FieldType.DIRECTORY),
        FieldSpec(id="accountId", label="Account"),
    ],
)

SYSTEM_MODELS = (LINK_MODEL, TRASH_MODEL)

# Summary operations whose result is a count or a number regardless of source
_NUMERIC_SUMMARIES = frozenset(
    {
        SummaryOperation.COUNT,
        SummaryOperation.COUNT_EMPTY,
        SummaryOperation.COUNT_NON_EMPTY,
        SummaryOperation.SUM,
        SummaryOperation.AVG,
        SummaryOperation.PERCENT,
    }
)
_TEXT_SUMMARIES = frozenset({SummaryOperation.CONCATENATE, SummaryOperation.LIST_NAME})

# Keys a caller may never set through update_field
_DERIVED_KEYS = ("source_for", "formula_source_field_ids")

SchemaListener = Callable[[str, str, str | None], None]


# =============================================================================
# Handles and Index
# =============================================================================


@dataclass(frozen=True)
class FieldRef:
    """Address of one field in the arena."""

    model_id: str
    field_id: str


@dataclass(frozen=True)
class ModelHandle:
    """Stable reference to a model; ``get()`` returns the current snapshot."""

    store: SchemaStore = field(repr=False, compare=False)
    model_id: str

    @property
    def id(self) -> str:
        return self.model_id

    def get(self) -> ModelSpec:
        return self.store.get_model(self.model_id)


@dataclass
class DependencyIndex:
    """Source field -> dependent lookup/summary fields, plus model-level edges."""

    dependents: dict[FieldRef, tuple[Dependent, ...]] = field(default_factory=dict)
    model_dependents: dict[str, tuple[str, ...]] = field(default_factory=dict)

    def dependents_of(self, model_id: str, field_id: str) -> tuple[Dependent, ...]:
        return self.dependents.get(FieldRef(model_id, field_id), ())

    def add(self, source: FieldRef, dependent: Dependent) -> None:
        existing = self.dependents.get(source, ())
        # One entry per dependent field, however many passes register it
        if any(
            d.model_id == dependent.model_id and d.field_id == dependent.field_id
            for d in existing
        ):
            return
        self.dependents[source] = (*existing, dependent)
        models = self.model_dependents.get(source.model_id, ())
        if dependent.model_id not in models:
            self.model_dependents[source.model_id] = (*models, dependent.model_id)


# =============================================================================
# Schema Store
# =============================================================================


class SchemaStore:
    """
    Arena of model snapshots with schema-editing operations.

    Example:
        store = SchemaStore()
        contacts = store.register_model({"id": "contact", "fields": [...]})
        store.add_field("contact", {"id": "email", "label": "Email"})
        contacts.get().get_field("Email")
    """

    def __init__(
        self,
        path: Path | str | None = None,
        formula_evaluator: FormulaEvaluator | None = None,
        *,
        with_system_models: bool = True,
    ) -> None:
        """
        Args:
            path: JSON file the schema is persisted to after every edit
            formula_evaluator: Evaluator used by ``check_formula``
            with_system_models: Register the link and trash models
        """
        self.path = Path(path) if path else None
        self.formula_evaluator = formula_evaluator or ExpressionEvaluator()
        self.warnings: list[SchemaInconsistency] = []
        # What callers authored, and the resolved snapshots served to readers
        self._authored: dict[str, ModelSpec] = {}
        self._models: dict[str, ModelSpec] = {}
        self._index = DependencyIndex()
        self._listeners: list[SchemaListener] = []

        if with_system_models:
            for spec in SYSTEM_MODELS:
                self._authored[spec.id] = spec
            self.resolve_relationships()

    # =========================================================================
    # Arena access
    # =========================================================================

    def register_model(self, spec: ModelSpec | dict[str, Any]) -> ModelHandle:
        """Add (or replace) a model and resolve relationships across the arena."""
        if isinstance(spec, dict):
            spec = ModelSpec.model_validate(spec)
        self._authored[spec.id] = spec
        self.resolve_relationships()
        self._persist()
        self._notify(spec.id, "register", None)
        return self.handle(spec.id)

    def remove_model(self, model_id: str) -> bool:
        if model_id not in self._authored:
            return False
        del self._authored[model_id]
        self.resolve_relationships()
        self._persist()
        self._notify(model_id, "remove", None)
        return True

    def handle(self, model_id: str) -> ModelHandle:
        if model_id not in self._models:
            raise NotFoundError(model_id)
        return ModelHandle(self, model_id)

    def get_model(self, model_id: str | ModelHandle) -> ModelSpec:
        if isinstance(model_id, ModelHandle):
            model_id = model_id.model_id
        try:
            return self._models[model_id]
        except KeyError:
            raise NotFoundError(model_id) from None

    def has_model(self, model_id: str) -> bool:
        return model_id in self._models

    def models(self) -> list[ModelSpec]:
        return list(self._models.values())

    @property
    def index(self) -> DependencyIndex:
        return self._index

    # =========================================================================
    # Field access
    # =========================================================================

    def get_field(self, model_id: str, id_or_label: str) -> FieldSpec | None:
        return self.get_model(model_id).get_field(id_or_label)

    def get_primary_key_field(self, model_id: str) -> FieldSpec | None:
        return self.get_model(model_id).get_primary_key_field()

    def get_active_fields(self, model_id: str) -> list[FieldSpec]:
        return self.get_model(model_id).active_fields

    def get_link_field(self, model_id: str, foreign_model_id: str) -> FieldSpec | None:
        return self.get_model(model_id).get_link_field(foreign_model_id)

    def computed_field_ids(self, model_id: str) -> list[str]:
        return list(self.get_model(model_id).computed_field_ids)

    def dependents_of(self, model_id: str, field_id: str) -> tuple[Dependent, ...]:
        return self._index.dependents_of(model_id, field_id)

    def fields_through_link(self, model_id: str, link_field_id: str) -> list[FieldSpec]:
        """Active lookup/summary fields of a model that read through ``link_field_id``."""
        result: list[FieldSpec] = []
        for f in self.get_model(model_id).active_fields:
            descriptor = f.lookup if f.type == FieldType.LOOKUP else f.summary
            if f.is_derived and descriptor and descriptor.link_id == link_field_id:
                result.append(f)
        return result

    # =========================================================================
    # Schema edits
    # =========================================================================

    def add_field(
        self,
        model_id: str,
        config: FieldSpec | dict[str, Any],
        section_id: str | None = None,
    ) -> FieldSpec:
        """
        Add a field to a model.

        The field goes to ``section_id`` if given, else to the last section
        (when the model has sections), else to the end of the catalog.
        """
        model = self._authored_model(model_id)
        new_field = config if isinstance(config, FieldSpec) else FieldSpec.model_validate(config)
        if any(f.id == new_field.id for f in model.fields):
            raise ValidationError(f"Field {new_field.id} already exists in {model_id}")

        sections = list(model.sections)
        if sections:
            position = len(sections) - 1
            if section_id is not None:
                for i, section in enumerate(sections):
                    if section.id == section_id:
                        position = i
                        break
            target = sections[position]
            sections[position] = target.model_copy(
                update={"field_ids": [*target.field_ids, new_field.id]}
            )

        self._commit(
            model.model_copy(update={"fields": [*model.fields, new_field], "sections": sections}),
            "add_field",
            new_field.id,
        )
        logger.info("Added field %s.%s (%s)", model_id, new_field.id, new_field.type.value)
        return self.get_model(model_id).get_field(new_field.id)  # type: ignore[return-value]

    def update_field(self, model_id: str, field_id: str, config: dict[str, Any]) -> FieldSpec | None:
        """
        Merge ``config`` into a field.

        A lookup/summary ``type`` is derived and silently ignored here, as
        are the derived bookkeeping keys.
        """
        model = self._authored_model(model_id)
        current = next((f for f in model.fields if f.id == field_id), None)
        if current is None:
            logger.warning("Cannot update missing field %s.%s", model_id, field_id)
            return None

        data = current.model_dump()
        for key, value in config.items():
            if key in _DERIVED_KEYS or key == "id":
                continue
            if key in ("lookup", "summary") and isinstance(value, dict):
                merged = {**(data.get(key) or {}), **value}
                merged.pop("type", None)
                data[key] = merged
            else:
                data[key] = value
        updated = FieldSpec.model_validate(data)

        fields = [updated if f.id == field_id else f for f in model.fields]
        self._commit(model.model_copy(update={"fields": fields}), "update_field", field_id)
        return self.get_model(model_id).get_field(field_id)

    def delete_field(self, model_id: str, field_id: str) -> bool:
        """
        Soft-delete a field.

        Returns:
            False for a primary field or an unknown field, True otherwise
        """
        model = self._authored_model(model_id)
        current = next((f for f in model.fields if f.id == field_id), None)
        if current is None:
            return False
        if current.primary:
            logger.warning("Refusing to delete primary field %s.%s", model_id, field_id)
            return False

        fields = [
            f.model_copy(update={"deleted": True}) if f.id == field_id else f for f in model.fields
        ]
        self._commit(model.model_copy(update={"fields": fields}), "delete_field", field_id)
        return True

    def connect_models(
        self,
        model_id: str,
        foreign_model_id: str,
        field_config: FieldSpec | dict[str, Any],
    ) -> FieldSpec:
        """
        Ensure the reciprocal link field exists on the foreign model.

        A soft-deleted foreign link field pointing back at this one is
        restored; otherwise a new one is created. The local link field is
        created if needed and its ``link.field_id`` updated.

        Returns:
            The foreign link field
        """
        local_config = (
            field_config
            if isinstance(field_config, FieldSpec)
            else FieldSpec.model_validate(
                {"type": FieldType.LINK, "link": {"model_id": foreign_model_id}, **field_config}
            )
        )
        model = self._authored_model(model_id)
        foreign = self._authored_model(foreign_model_id)
        local_id = local_config.id

        foreign_field = next(
            (
                f
                for f in foreign.fields
                if f.type == FieldType.LINK
                and f.link
                and f.link.model_id == model_id
                and f.link.field_id == local_id
            ),
            None,
        )

        if foreign_field is not None:
            restored = foreign_field.model_copy(update={"deleted": False})
            foreign_fields = [restored if f.id == restored.id else f for f in foreign.fields]
            foreign_field = restored
            logger.info("Restored link field %s.%s", foreign_model_id, restored.id)
        else:
            foreign_field = FieldSpec(
                id=f"link_{uuid4().hex[:10]}",
                label=model.name or model.id,
                type=FieldType.LINK,
                multiple=True,
                link=LinkSpec(model_id=model_id, field_id=local_id),
            )
            foreign_fields = [*foreign.fields, foreign_field]
            logger.info("Created link field %s.%s", foreign_model_id, foreign_field.id)

        local_link = LinkSpec(model_id=foreign_model_id, field_id=foreign_field.id)
        existing = next((f for f in model.fields if f.id == local_id), None)
        if existing is None:
            local_fields = [
                *model.fields,
                local_config.model_copy(update={"type": FieldType.LINK, "link": local_link}),
            ]
        else:
            local_fields = [
                f.model_copy(update={"type": FieldType.LINK, "link": local_link, "deleted": False})
                if f.id == local_id
                else f
                for f in model.fields
            ]

        self._authored[foreign_model_id] = foreign.model_copy(update={"fields": foreign_fields})
        self._commit(model.model_copy(update={"fields": local_fields}), "connect", local_id)
        self._notify(foreign_model_id, "connect", foreign_field.id)
        return self.get_model(foreign_model_id).get_field(foreign_field.id)  # type: ignore[return-value]

    def generate_links_to_model(
        self,
        model_id: str,
        foreign_model_id: str,
        label: str | None = None,
    ) -> tuple[FieldSpec, FieldSpec]:
        """Create a new pair of link fields between two models."""
        foreign = self.get_model(foreign_model_id)
        local_id = f"link_{uuid4().hex[:10]}"
        foreign_field = self.connect_models(
            model_id,
            foreign_model_id,
            {"id": local_id, "label": label or foreign.name or foreign.id, "multiple": True},
        )
        local_field = self.get_model(model_id).get_field(local_id)
        return local_field, foreign_field  # type: ignore[return-value]

    def delete_links_to_model(self, model_id: str, foreign_model_id: str) -> int:
        """Soft-delete every link field pair between two models. Returns pairs removed."""
        model = self._authored_model(model_id)
        removed = 0
        for f in list(model.link_fields):
            if not f.link or f.link.model_id != foreign_model_id:
                continue
            self.delete_field(model_id, f.id)
            if f.link.field_id and self.has_model(foreign_model_id):
                self.delete_field(foreign_model_id, f.link.field_id)
            removed += 1
        return removed

    def check_formula(self, model_id: str, formula: str) -> bool:
        """True when every tag resolves and the formula evaluates on a blank record."""
        fields = self.get_model(model_id).active_fields
        for tag in find_tags(formula):
            if resolve_tag(tag, fields) is None:
                logger.debug("Formula tag %r does not resolve in %s", tag, model_id)
                return False
        try:
            self.formula_evaluator.execute(formula, {}, fields)
        except Exception:
            logger.debug("Formula check failed for %s: %s", model_id, formula, exc_info=True)
            return False
        return True

    # =========================================================================
    # Relationship resolution
    # =========================================================================

    def resolve_relationships(self) -> DependencyIndex:
        """
        Rebuild the dependency index and derived field state across the arena.

        - Link fields whose target model is missing degrade to text.
        - Lookup/summary fields get their type (and precision for numeric
          sources) from the source field, and register a back-edge.
        - Broken lookups/summaries degrade to text.

        Never raises for an inconsistent schema; problems are logged and
        collected in ``warnings``.
        """
        self.warnings = []
        models: dict[str, ModelSpec] = {}
        for model_id, authored in self._authored.items():
            model = self._init_computed_fields(authored)
            models[model_id] = model.model_copy(
                update={
                    "fields": [f.model_copy(update={"source_for": []}) for f in model.fields],
                    "source_for": [],
                }
            )

        index = DependencyIndex()
        for _ in range(MAX_RESOLUTION_PASSES):
            index = DependencyIndex()
            changed = False
            for model_id in list(models):
                fields: list[FieldSpec] = []
                for f in models[model_id].fields:
                    resolved = self._resolve_field(models, model_id, f, index)
                    changed = changed or resolved != f
                    fields.append(resolved)
                models[model_id] = models[model_id].model_copy(update={"fields": fields})
            if not changed:
                break

        for model_id, model in models.items():
            fields = [
                f.model_copy(update={"source_for": list(index.dependents_of(model_id, f.id))})
                for f in model.fields
            ]
            models[model_id] = model.model_copy(
                update={
                    "fields": fields,
                    "source_for": list(index.model_dependents.get(model_id, ())),
                }
            )

        self._models = models
        self._index = index
        return index

    def _degrade(self, model_id: str, f: FieldSpec, reason: str) -> FieldSpec:
        warning = SchemaInconsistency(model_id, f.id, reason)
        self.warnings.append(warning)
        logger.warning("Schema inconsistency, degrading to text: %s", warning.message)
        return f.model_copy(update={"type": FieldType.TEXT})

    def _resolve_field(
        self,
        models: dict[str, ModelSpec],
        model_id: str,
        f: FieldSpec,
        index: DependencyIndex,
    ) -> FieldSpec:
        if f.deleted:
            return f

        if f.type == FieldType.LINK:
            if not f.link or f.link.model_id not in models:
                target = f.link.model_id if f.link else None
                return self._degrade(model_id, f, f"link target model {target!r} not found")
            return f

        if not f.is_derived:
            return f

        descriptor = f.lookup if f.type == FieldType.LOOKUP else f.summary
        if descriptor is None:
            return self._degrade(model_id, f, f"missing {f.type.value} descriptor")

        link_field = next((x for x in models[model_id].fields if x.id == descriptor.link_id), None)
        if link_field is None or link_field.type != FieldType.LINK or not link_field.link:
            return self._degrade(model_id, f, f"link field {descriptor.link_id!r} not found")

        foreign = models.get(link_field.link.model_id)
        if foreign is None:
            return self._degrade(model_id, f, f"model {link_field.link.model_id!r} not found")

        source = foreign.get_field(descriptor.field_id)
        if source is None:
            return self._degrade(
                model_id, f, f"source field {foreign.id}.{descriptor.field_id} not found"
            )

        if f.type == FieldType.LOOKUP:
            derived_type = source.value_type
        elif f.summary and f.summary.operation in _NUMERIC_SUMMARIES:
            derived_type = FieldType.NUMBER
        elif f.summary and f.summary.operation in _TEXT_SUMMARIES:
            derived_type = FieldType.TEXT
        else:
            derived_type = source.value_type

        updates: dict[str, Any] = {
            "computed": True,
            f.type.value: descriptor.model_copy(
                update={"type": derived_type, "field_id": source.id}
            ),
        }
        if derived_type == FieldType.NUMBER and source.is_numeric and source.precision is not None:
            updates["precision"] = source.precision

        index.add(
            FieldRef(foreign.id, source.id),
            Dependent(model_id=model_id, field_id=f.id, type=f.type),
        )
        return f.model_copy(update=updates)

    # =========================================================================
    # Internals
    # =========================================================================

    def _authored_model(self, model_id: str) -> ModelSpec:
        try:
            return self._authored[model_id]
        except KeyError:
            raise NotFoundError(model_id) from None

    def _init_computed_fields(self, model: ModelSpec) -> ModelSpec:
        """Resolve formula tags to field ids and derive computed_field_ids."""
        fields: list[FieldSpec] = []
        for f in model.fields:
            if f.computed and f.formula and not f.is_derived:
                source_ids: list[str] = []
                for tag in find_tags(f.formula):
                    source = resolve_tag(tag, model.fields)
                    if source is not None and source.id not in source_ids:
                        source_ids.append(source.id)
                f = f.model_copy(update={"formula_source_field_ids": source_ids})
            fields.append(f)

        computed_ids = [f.id for f in fields if (f.computed or f.is_derived) and not f.deleted]
        return model.model_copy(update={"fields": fields, "computed_field_ids": computed_ids})

    def _commit(self, model: ModelSpec, change: str, field_id: str | None) -> None:
        self._authored[model.id] = model
        self.resolve_relationships()
        self._persist()
        self._notify(model.id, change, field_id)

    def add_listener(self, listener: SchemaListener) -> None:
        """Register ``listener(model_id, change, field_id)`` for schema edits."""
        self._listeners.append(listener)

    def remove_listener(self, listener: SchemaListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self, model_id: str, change: str, field_id: str | None) -> None:
        for listener in self._listeners:
            try:
                listener(model_id, change, field_id)
            except Exception:
                logger.exception(
                    "Schema listener %s failed for %s:%s",
                    getattr(listener, "__name__", listener),
                    model_id,
                    change,
                )

    # =========================================================================
    # Persistence
    # =========================================================================

    def to_dict(self) -> dict[str, Any]:
        return {"models": [m.model_dump(mode="json") for m in self._authored.values()]}

    def save(self, path: Path | str | None = None) -> Path:
        target = Path(path) if path else self.path
        if target is None:
            raise ValueError("No schema path configured")
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(json.dumps(self.to_dict(), indent=2), encoding="utf-8")
        return target

    @classmethod
    def load(cls, path: Path | str, **kwargs: Any) -> SchemaStore:
        """Build a store from a file written by ``save``."""
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        store = cls(path=path, with_system_models=False, **kwargs)
        for raw in data.get("models", []):
            spec = ModelSpec.model_validate(raw)
            store._authored[spec.id] = spec
        for spec in SYSTEM_MODELS:
            store._authored.setdefault(spec.id, spec)
        store.resolve_relationships()
        return store

    def _persist(self) -> None:
        if self.path is not None:
            self.save()


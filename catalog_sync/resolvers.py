"""Foreign-key resolution with memoised remote lookups."""

import asyncio
import logging
from collections import defaultdict
from typing import Any, Dict, Mapping, Optional, Tuple

from .clients.base import APIError, NotFoundError
from .entities import (
    BRAND, CATEGORY, FIELD, FIELD_VALUE, PARENT_CATEGORY, PRODUCT, SKU,
    Dependency, EntityType, get_entity_type, render_path,
)
from .errors import LookupMissError, RemoteLookupError
from .lookups import LookupTables, field_key, field_value_key
from .models import Entity, Resolution, ResolvedRecord, SkipKind, SkippedRecord


logger = logging.getLogger(__name__)

# Dependencies are always resolved in this order
RESOLUTION_ORDER = (CATEGORY, PARENT_CATEGORY, BRAND, PRODUCT, SKU, FIELD, FIELD_VALUE)


def _as_id(value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError(f"not an id: {value!r}")
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return int(str(value).strip())


class DependencyResolver:
    """Turns entities into submittable records, or explains why not.

    Product and SKU ids are looked up in order: ids created earlier in this
    run, the artifact tables, then a remote call by reference code. Each
    distinct reference triggers at most one remote call per run, and misses
    are remembered too.
    """

    def __init__(
        self,
        tables: LookupTables,
        reader: Any = None,
        context: Optional[Mapping[str, Any]] = None,
        skip_category_lookup: bool = False,
    ):
        self.tables = tables
        self.reader = reader
        self.context = dict(context or {})
        self.skip_category_lookup = skip_category_lookup

        self._run_ids: Dict[str, Dict[str, int]] = defaultdict(dict)
        self._remote_cache: Dict[Tuple[str, str], Tuple[Optional[int], Optional[str]]] = {}
        self._lock = asyncio.Lock()
        self.remote_calls = 0

    def record_created(self, entity_type: str, ref_id: str, remote_id: int) -> None:
        """Remember an id created in this run so later records can use it."""
        self._run_ids[entity_type][ref_id] = remote_id

    def created_id(self, entity_type: str, ref_id: str) -> Optional[int]:
        return self._run_ids[entity_type].get(ref_id)

    async def resolve(self, entity: Entity, action: str = "import") -> Resolution:
        """Resolve every dependency of an entity; never raises for a miss."""
        try:
            etype = get_entity_type(entity.entity_type)
            method, template = etype.route(action)
        except ValueError as e:
            return SkippedRecord(entity=entity, reason=str(e), kind=SkipKind.INVALID)

        body = dict(entity.payload)
        resolved: Dict[str, int] = {}

        try:
            for dep in sorted(etype.dependencies, key=lambda d: RESOLUTION_ORDER.index(d.kind)):
                existing = body.get(dep.target)
                if existing is not None:
                    resolved[dep.target] = _as_id(existing)
                    continue

                value = await self._resolve_dependency(dep, entity, body, resolved)
                if value is None:
                    continue
                resolved[dep.target] = value
                if dep.in_body:
                    body[dep.target] = value

            if action == "update" and etype.self_lookup and body.get(etype.self_target) is None:
                own_id = await self._resolve_self(etype, entity)
                body[etype.self_target] = own_id
                resolved[etype.self_target] = own_id

        except LookupMissError as e:
            logger.debug("Skipping %s %s: %s", entity.entity_type, entity.ref_id, e)
            return SkippedRecord(entity=entity, reason=str(e), kind=SkipKind.LOOKUP_MISS)
        except RemoteLookupError as e:
            logger.debug("Skipping %s %s: %s", entity.entity_type, entity.ref_id, e)
            return SkippedRecord(entity=entity, reason=str(e), kind=SkipKind.REMOTE_LOOKUP)
        except ValueError as e:
            return SkippedRecord(entity=entity, reason=f"invalid id: {e}", kind=SkipKind.INVALID)

        if etype.prepare is not None:
            etype.prepare(body)

        values = {**self.context, **body, **resolved}
        try:
            path = render_path(template, values)
        except KeyError as e:
            return SkippedRecord(
                entity=entity,
                reason=f"missing value for {e.args[0]}",
                kind=SkipKind.INVALID,
            )

        return ResolvedRecord(entity=entity, method=method, path=path, body=body, resolved=resolved)

    async def _resolve_dependency(
        self,
        dep: Dependency,
        entity: Entity,
        body: Dict[str, Any],
        resolved: Dict[str, int],
    ) -> Optional[int]:
        ref = entity.reference(dep.column)
        if ref is None:
            if dep.required and not (dep.kind == CATEGORY and self.skip_category_lookup):
                raise LookupMissError(f"{dep.column} is empty")
            return None

        if dep.kind == CATEGORY:
            if self.skip_category_lookup:
                return None
            return self._category_id(ref, "category")
        if dep.kind == PARENT_CATEGORY:
            created = self.created_id("category", ref)
            if created is not None:
                return created
            return self._category_id(ref, "parent category")
        if dep.kind == BRAND:
            if ref not in self.tables.brands:
                raise LookupMissError(f"brand not found: {ref}")
            return self.tables.brands[ref]
        if dep.kind == PRODUCT:
            return await self._lookup_ref("product", ref)
        if dep.kind == SKU:
            return await self._lookup_ref("sku", ref)
        if dep.kind == FIELD:
            category_id = resolved.get("CategoryId", body.get("CategoryId")) or 0
            key = field_key(category_id, ref)
            if key not in self.tables.fields:
                raise LookupMissError(f"field not found: {key}")
            return self.tables.fields[key]
        if dep.kind == FIELD_VALUE:
            field_id = resolved.get("FieldId")
            if field_id is None:
                raise LookupMissError(f"field value {ref!r} has no field")
            key = field_value_key(field_id, ref)
            if key not in self.tables.field_values:
                if dep.required:
                    raise LookupMissError(f"field value not found: {key}")
                # Free-text specifications have no value id
                return None
            return self.tables.field_values[key]

        raise ValueError(f"unknown dependency kind {dep.kind}")

    def _category_id(self, identifier: str, label: str) -> int:
        name = self.tables.category_names.get(identifier, identifier)
        if name not in self.tables.categories:
            raise LookupMissError(f"{label} not found: {identifier}")
        return self.tables.categories[name]

    async def _resolve_self(self, etype: EntityType, entity: Entity) -> int:
        if etype.self_lookup == PRODUCT:
            return await self._lookup_ref("product", entity.ref_id)
        if etype.self_lookup == SKU:
            return await self._lookup_ref("sku", entity.ref_id)
        if etype.self_lookup == CATEGORY:
            name = self.tables.category_names.get(entity.ref_id) or entity.payload.get("Name")
            if name is None or name not in self.tables.categories:
                raise LookupMissError(f"category not found: {entity.ref_id}")
            return self.tables.categories[name]
        if etype.self_lookup == BRAND:
            if entity.ref_id not in self.tables.brands:
                raise LookupMissError(f"brand not found: {entity.ref_id}")
            return self.tables.brands[entity.ref_id]
        raise LookupMissError(f"cannot find id of {etype.name} {entity.ref_id}")

    async def _lookup_ref(self, kind: str, ref_id: str) -> int:
        created = self.created_id(kind, ref_id)
        if created is not None:
            return created

        table = self.tables.products if kind == "product" else self.tables.skus
        if ref_id in table:
            return table[ref_id]

        if self.reader is None:
            raise LookupMissError(f"{kind} not found: {ref_id}")

        key = (kind, ref_id)
        async with self._lock:
            if key not in self._remote_cache:
                self._remote_cache[key] = await self._fetch_ref(kind, ref_id)
        remote_id, error = self._remote_cache[key]

        if remote_id is None:
            raise RemoteLookupError(error)
        return remote_id

    async def _fetch_ref(self, kind: str, ref_id: str) -> Tuple[Optional[int], Optional[str]]:
        self.remote_calls += 1
        fetch = (
            self.reader.get_product_id_by_ref_id
            if kind == "product"
            else self.reader.get_sku_id_by_ref_id
        )
        try:
            remote_id = await fetch(ref_id)
        except NotFoundError:
            return None, f"{kind} not found: {ref_id}"
        except APIError as e:
            logger.warning("Remote %s lookup failed for %s: %s", kind, ref_id, e)
            return None, f"{kind} lookup failed for {ref_id}: {e}"
        logger.debug("Resolved %s %s -> %s", kind, ref_id, remote_id)
        return remote_id, None

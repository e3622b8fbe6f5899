"""Record and object indexes consumed by every later phase."""

from collections import defaultdict
from collections.abc import Iterable

import structlog

from ..core.config_loader import MigrationConfig
from ..core.error_recovery import ErrorRecoveryManager
from ..models.enums import ObjectClassification, RecordClassification
from ..models.records import ObjectKey, ObjectMeta, Record
from ..repository.base import MetadataRepository
from ..storage.base import StorageLocationClient
from ..utils import clean_path, family_key, normalize_filename, parent_dir

logger = structlog.get_logger()


class Inventory:
    """In-memory indexes over records and storage objects.

    Services keep the indexes current as they mutate records and objects,
    so later phases of the same invocation see the effects of earlier ones.
    """

    def __init__(self, target_location: str, target_prefix: str, extension_families: Iterable[Iterable[str]]):
        self.target_location = target_location
        self.target_prefix = clean_path(target_prefix)
        self.extension_families = [list(f) for f in extension_families]

        self.records: dict[str, Record] = {}
        self.records_by_name: dict[str, set[str]] = defaultdict(set)
        self.objects: dict[ObjectKey, ObjectMeta] = {}
        self.objects_by_name: dict[str, set[ObjectKey]] = defaultdict(set)
        self.objects_by_lower: dict[str, set[ObjectKey]] = defaultdict(set)
        self.objects_by_normalized: dict[str, set[ObjectKey]] = defaultdict(set)
        self.objects_by_family: dict[str, set[ObjectKey]] = defaultdict(set)
        self.references: dict[ObjectKey, set[str]] = defaultdict(set)

    # Records

    def add_record(self, record: Record) -> None:
        self.records[record.id] = record
        self.records_by_name[normalize_filename(record.filename)].add(record.id)
        self.references[record.key].add(record.id)

    def remove_record(self, record_id: str) -> Record | None:
        record = self.records.pop(record_id, None)
        if record is None:
            return None
        self.records_by_name[normalize_filename(record.filename)].discard(record_id)
        self.references[record.key].discard(record_id)
        return record

    def repoint_record(self, record_id: str, location: str, path: str) -> Record:
        record = self.records[record_id]
        self.references[record.key].discard(record_id)
        updated = record.model_copy(update={"location": location, "path": clean_path(path)})
        self.records[record_id] = updated
        self.references[updated.key].add(record_id)
        return updated

    # Objects

    def add_object(self, meta: ObjectMeta) -> None:
        key = meta.key
        self.objects[key] = meta
        name = meta.filename
        self.objects_by_name[name].add(key)
        self.objects_by_lower[name.lower()].add(key)
        self.objects_by_normalized[normalize_filename(name)].add(key)
        self.objects_by_family[family_key(name, self.extension_families)].add(key)

    def remove_object(self, key: ObjectKey) -> ObjectMeta | None:
        meta = self.objects.pop(key, None)
        if meta is None:
            return None
        name = meta.filename
        self.objects_by_name[name].discard(key)
        self.objects_by_lower[name.lower()].discard(key)
        self.objects_by_normalized[normalize_filename(name)].discard(key)
        self.objects_by_family[family_key(name, self.extension_families)].discard(key)
        return meta

    def move_object(self, source: ObjectKey, target: ObjectKey, keep_source: bool = False) -> None:
        meta = self.objects.get(source)
        if meta is None:
            return
        if not keep_source:
            self.remove_object(source)
        self.add_object(meta.model_copy(update={"location": target.location, "path": target.path}))

    # Queries

    def is_canonical(self, record: Record) -> bool:
        return record.location == self.target_location and parent_dir(record.path) == self.target_prefix

    def classify_record(self, record: Record) -> RecordClassification:
        if record.key not in self.objects:
            return RecordClassification.BROKEN
        if self.is_canonical(record):
            return RecordClassification.LINKED_CORRECT
        return RecordClassification.LINKED_WRONG_LOCATION

    def classify_object(self, key: ObjectKey) -> ObjectClassification:
        if self.references.get(key):
            return ObjectClassification.REFERENCED
        return ObjectClassification.ORPHANED

    def live_references(self, key: ObjectKey) -> list[str]:
        return sorted(rid for rid in self.references.get(key, ()) if self.records[rid].live)

    def records_with(self, classification: RecordClassification) -> list[str]:
        return sorted(rid for rid, r in self.records.items() if self.classify_record(r) == classification)

    def orphaned_objects(self) -> list[ObjectKey]:
        return sorted(
            (k for k in self.objects if self.classify_object(k) == ObjectClassification.ORPHANED),
            key=lambda k: (k.location, k.path),
        )

    def summary(self) -> dict[str, int]:
        counts = {c.value: 0 for c in RecordClassification}
        for record in self.records.values():
            counts[self.classify_record(record).value] += 1
        return {
            "records": len(self.records),
            "live_records": sum(1 for r in self.records.values() if r.live),
            "objects": len(self.objects),
            "orphaned_objects": len(self.orphaned_objects()),
            "broken_records": counts[RecordClassification.BROKEN.value],
            "linked_correct": counts[RecordClassification.LINKED_CORRECT.value],
            "linked_wrong_location": counts[RecordClassification.LINKED_WRONG_LOCATION.value],
        }


class InventoryBuilder:
    """Builds the inventory from the repository and every managed location.

    Read-only against both. A listing failure on any location is fatal.
    """

    def __init__(
        self,
        config: MigrationConfig,
        storage: StorageLocationClient,
        repository: MetadataRepository,
        error_recovery: ErrorRecoveryManager,
    ):
        self.config = config
        self.storage = storage
        self.repository = repository
        self.error_recovery = error_recovery
        self.logger = logger.bind(component="inventory")

    async def build(self) -> Inventory:
        inventory = Inventory(
            self.config.target_location, self.config.target_prefix, self.config.extension_families
        )

        async for page in self.repository.iter_records(self.config.batch_size):
            for record in page:
                inventory.add_record(record)

        for location in self.config.managed_locations:
            objects = await self.error_recovery.execute_with_retry(
                lambda location=location: self._list_location(location),
                signature=f"inventory.list:{location}",
            )
            for meta in objects:
                inventory.add_object(meta)
            self.logger.info("Location indexed", location=location, objects=len(objects))

        self.logger.info("Inventory built", **inventory.summary())
        return inventory

    async def _list_location(self, location: str) -> list[ObjectMeta]:
        return [meta async for meta in self.storage.list(location)]

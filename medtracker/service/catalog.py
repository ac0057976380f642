from __future__ import annotations

from typing import Any, Dict, List

from medtracker.logging import get_logger
from medtracker.service.errors import NotFoundError, ValidationError
from medtracker.storage.models import CATALOG_FIELDS, GlobalMedicine, new_id, utcnow
from medtracker.storage.repositories import GlobalMedicineRepository

logger = get_logger(__name__)


class CatalogService:
    """Shared reference list of medicines, not scoped to any user."""

    def __init__(self, store: GlobalMedicineRepository) -> None:
        self.store = store

    @staticmethod
    def _clean(fields: Dict[str, Any]) -> Dict[str, Any]:
        cleaned = {k: v for k, v in fields.items() if k in CATALOG_FIELDS}
        name = (cleaned.get("name") or "").strip()
        if not name:
            raise ValidationError("medicine name is required", detail={"field": "name"})
        cleaned["name"] = name
        return cleaned

    def create(self, fields: Dict[str, Any]) -> GlobalMedicine:
        now = utcnow()
        entry = GlobalMedicine(id=new_id(), created_at=now, updated_at=now, **self._clean(fields))
        created = self.store.create_global_medicine(entry)
        logger.info("catalog_entry_created", entry_id=created.id)
        return created

    def get(self, entry_id: str) -> GlobalMedicine:
        entry = self.store.get_global_medicine(entry_id)
        if not entry:
            raise NotFoundError("global medicine not found", detail={"id": entry_id})
        return entry

    def list(self) -> List[GlobalMedicine]:
        return self.store.list_global_medicines()

    def search(self, name: str) -> List[GlobalMedicine]:
        return self.store.search_global_medicines((name or "").strip())

    def by_category(self, category: str) -> List[GlobalMedicine]:
        return self.store.list_global_medicines_by_category(category)

    def update(self, entry_id: str, fields: Dict[str, Any]) -> GlobalMedicine:
        # full replacement: omitted optional fields are cleared
        replacement = {name: None for name in CATALOG_FIELDS}
        replacement.update(self._clean(fields))
        updated = self.store.update_global_medicine(entry_id, replacement)
        if not updated:
            raise NotFoundError("global medicine not found", detail={"id": entry_id})
        return updated

    def delete(self, entry_id: str) -> None:
        if not self.store.delete_global_medicine(entry_id):
            raise NotFoundError("global medicine not found", detail={"id": entry_id})
        logger.info("catalog_entry_deleted", entry_id=entry_id)

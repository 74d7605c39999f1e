from typing import Any, Dict, Optional, Sequence

from catalog_sync.services.errors import ValidationError

DEFAULT_KEY_FIELDS = ("sku", "SKU", "code", "id")
DEFAULT_NAME_FIELDS = ("name", "title", "descripcion", "description")


class ItemMapper:
    """
    Минимальное отображение элемента ERP в запись каталога и обратно.

    Полноценное сопоставление полей выполняется снаружи; здесь нужен только
    стабильный ключ элемента для идемпотентного upsert.
    """
    def __init__(self, key_fields: Sequence[str] = DEFAULT_KEY_FIELDS,
                 name_fields: Sequence[str] = DEFAULT_NAME_FIELDS):
        self.key_fields = tuple(key_fields)
        self.name_fields = tuple(name_fields)

    def item_key(self, raw: Dict[str, Any]) -> str:
        if not isinstance(raw, dict):
            raise ValidationError(f"Элемент должен быть объектом, получено {type(raw).__name__}")
        for field in self.key_fields:
            value = raw.get(field)
            if value is not None and str(value).strip():
                return str(value).strip()
        raise ValidationError(f"У элемента нет ключа ({', '.join(self.key_fields)})",
                              context={"fields": sorted(raw.keys())})

    def item_name(self, raw: Dict[str, Any]) -> Optional[str]:
        for field in self.name_fields:
            value = raw.get(field)
            if value:
                return str(value)
        return None

    def to_catalog(self, raw: Dict[str, Any]) -> Dict[str, Any]:
        return {"key": self.item_key(raw), "name": self.item_name(raw), "payload": dict(raw)}

    def to_remote(self, record: Dict[str, Any]) -> Dict[str, Any]:
        payload = dict(record.get("payload") or {})
        payload.setdefault(self.key_fields[0], record["key"])
        if record.get("name") and not any(payload.get(f) for f in self.name_fields):
            payload[self.name_fields[0]] = record["name"]
        return payload

from __future__ import annotations

from pathlib import Path

import yaml
from pydantic import ValidationError

from voxcore.models.descriptors import ModelDescriptor, ModelRole


class ModelCatalog:
    """Descriptors known to the app, usually read from a YAML file.

    The file holds a ``models`` list; each item carries the fields of
    ``ModelDescriptor``.
    """

    def __init__(self, descriptors: list[ModelDescriptor]) -> None:
        self._by_key: dict[tuple[str, str], ModelDescriptor] = {}
        for descriptor in descriptors:
            if descriptor.key in self._by_key:
                raise ValueError(f"duplicate catalog entry {descriptor.model_id}@{descriptor.version}")
            self._by_key[descriptor.key] = descriptor

    def __len__(self) -> int:
        return len(self._by_key)

    def __iter__(self):
        return iter(self._by_key.values())

    def get(self, model_id: str, version: str | None = None) -> ModelDescriptor:
        if version is not None:
            try:
                return self._by_key[(model_id, version)]
            except KeyError as exc:
                raise KeyError(f"catalog has no {model_id}@{version}") from exc
        candidates = [d for d in self._by_key.values() if d.model_id == model_id]
        if not candidates:
            raise KeyError(f"catalog has no model '{model_id}'")
        return max(candidates, key=lambda d: _version_key(d.version))

    def for_role(self, role: ModelRole) -> list[ModelDescriptor]:
        return [d for d in self._by_key.values() if d.role is role]


def _version_key(version: str) -> tuple:
    return tuple((0, int(part)) if part.isdigit() else (1, part) for part in version.replace("-", ".").split("."))


def load_catalog(path: str | Path) -> ModelCatalog:
    config_path = Path(path).expanduser()
    if not config_path.exists():
        raise FileNotFoundError(config_path)
    raw = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    if not isinstance(raw, dict) or not isinstance(raw.get("models", []), list):
        raise ValueError(f"{config_path.name} must define a 'models' list")
    try:
        descriptors = [ModelDescriptor.model_validate(item) for item in raw.get("models", [])]
    except ValidationError as exc:
        raise ValueError(f"invalid model entry in {config_path.name}: {exc}") from exc
    return ModelCatalog(descriptors)


__all__ = ["ModelCatalog", "load_catalog"]

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Final

from ..config import PipelineConfig

_ALLOWED_SCHEMA_VERSIONS: Final[tuple[str, ...]] = ("v1",)


@dataclass(frozen=True)
class ModelManifest:
    schema_version: str
    model_id: str
    version: str
    created_at: datetime
    labels: tuple[str, ...]
    input_shape: tuple[int, int, int, int]
    input_name: str
    output_name: str
    preprocess: PipelineConfig

    @property
    def n_classes(self) -> int:
        return len(self.labels)

    @staticmethod
    def from_path(path: Path) -> ModelManifest:
        return ModelManifest.from_json(path.read_text(encoding="utf-8"))

    @staticmethod
    def from_json(s: str) -> ModelManifest:
        obj: object = json.loads(s)
        if not isinstance(obj, dict):
            raise ValueError("manifest must be a JSON object")
        data: dict[str, object] = {str(k): v for k, v in obj.items()}
        return ModelManifest.from_dict(data)

    @staticmethod
    def from_dict(d: dict[str, object]) -> ModelManifest:
        schema_version = str(d.get("schema_version", "")).strip()
        model_id = str(d.get("model_id", "")).strip()
        version = str(d.get("version", "")).strip()
        if not schema_version or not model_id or not version:
            raise ValueError("manifest is missing required fields")
        if schema_version not in _ALLOWED_SCHEMA_VERSIONS:
            raise ValueError("unsupported manifest schema version")
        created_at_str = str(d["created_at"]) if "created_at" in d else ""
        created = datetime.fromisoformat(created_at_str) if created_at_str else datetime.now()

        labels_raw = d.get("labels")
        if not isinstance(labels_raw, list) or len(labels_raw) < 2:
            raise ValueError("labels must be a list of at least two class symbols")
        labels = tuple(str(x) for x in labels_raw)
        if any(not lab for lab in labels) or len(set(labels)) != len(labels):
            raise ValueError("labels must be non-empty and unique")

        shape_raw = d.get("input_shape")
        if not isinstance(shape_raw, list) or len(shape_raw) != 4:
            raise ValueError("input_shape must be [1, 1, H, W]")
        dims = tuple(int(str(x)) for x in shape_raw)
        if dims[0] != 1 or dims[1] != 1 or dims[2] < 1 or dims[3] < 1:
            raise ValueError("input_shape must be [1, 1, H, W]")

        pre_raw = d.get("preprocess")
        if not isinstance(pre_raw, dict):
            raise ValueError("manifest must carry a preprocess table")
        preprocess = PipelineConfig.from_dict({str(k): v for k, v in pre_raw.items()})

        return ModelManifest(
            schema_version=schema_version,
            model_id=model_id,
            version=version,
            created_at=created,
            labels=labels,
            input_shape=(dims[0], dims[1], dims[2], dims[3]),
            input_name=str(d.get("input_name", "input")).strip() or "input",
            output_name=str(d.get("output_name", "logits")).strip() or "logits",
            preprocess=preprocess,
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "schema_version": self.schema_version,
            "model_id": self.model_id,
            "version": self.version,
            "created_at": self.created_at.isoformat(),
            "labels": list(self.labels),
            "input_shape": list(self.input_shape),
            "input_name": self.input_name,
            "output_name": self.output_name,
            "preprocess": self.preprocess.to_dict(),
        }

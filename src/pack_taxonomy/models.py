"""Pack records and classification results.

Packs arrive from an upstream discovery layer with their facts already
extracted (names, tags, file counts, tempo, internal folder layout and
bundle membership).  They are treated as read-only here; the only
mutation the pipeline performs is attaching the authoritative
:class:`Classification` once the cascade settles on one.

Every record offers ``to_dict`` so that run reports stay plain JSON, and
:class:`Pack` offers ``from_dict`` for loading the JSON pack lists the CLI
accepts.  Both camelCase and snake_case keys are accepted on input since
discovery tools in the wild emit either.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union


class ClassificationMethod(str, Enum):
    TAXONOMIC = "taxonomic"
    BUNDLE_INHERITED = "bundle-inherited"
    AI_FALLBACK = "ai-fallback"
    MANUAL = "manual"


def _pick(data: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


def _str_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return [str(v) for v in value if v is not None and str(v).strip()]


@dataclass
class TypeBucket:
    """Files of one detected type inside a pack (e.g. ``KICKS``)."""

    file_count: int = 0
    paths: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any) -> "TypeBucket":
        if isinstance(data, (int, float)):
            return cls(file_count=int(data))
        if not isinstance(data, dict):
            return cls()
        return cls(
            file_count=int(_pick(data, "file_count", "fileCount", "count", default=0) or 0),
            paths=_str_list(_pick(data, "paths", default=[])),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"file_count": self.file_count, "paths": list(self.paths)}


@dataclass
class InternalStructure:
    """Folder layout facts detected inside a pack."""

    subfolders: List[str] = field(default_factory=list)
    detected_types: Dict[str, TypeBucket] = field(default_factory=dict)
    formats: List[str] = field(default_factory=list)
    depth: int = 0
    organization: str = "flat"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InternalStructure":
        raw_types = _pick(data, "detected_types", "detectedTypes", default={}) or {}
        detected: Dict[str, TypeBucket] = {}
        if isinstance(raw_types, dict):
            for type_name, info in raw_types.items():
                detected[str(type_name).upper()] = TypeBucket.from_dict(info)
        elif isinstance(raw_types, list):
            for type_name in raw_types:
                detected[str(type_name).upper()] = TypeBucket()
        return cls(
            subfolders=_str_list(_pick(data, "subfolders", "subFolders", "folders", default=[])),
            detected_types=detected,
            formats=_str_list(_pick(data, "formats", "detectedFormats", default=[])),
            depth=int(_pick(data, "depth", "maxDepth", default=0) or 0),
            organization=str(_pick(data, "organization", "organizationStyle", default="flat")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subfolders": list(self.subfolders),
            "detected_types": {k: v.to_dict() for k, v in self.detected_types.items()},
            "formats": list(self.formats),
            "depth": self.depth,
            "organization": self.organization,
        }


@dataclass
class BundleInfo:
    """Membership of a pack inside a bundle of sibling packs."""

    bundle_name: str
    bundle_path: str = ""
    sibling_names: List[str] = field(default_factory=list)
    keywords: List[str] = field(default_factory=list)

    @property
    def key(self) -> str:
        return self.bundle_path or self.bundle_name

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BundleInfo":
        return cls(
            bundle_name=str(_pick(data, "bundle_name", "bundleName", "name", default="")),
            bundle_path=str(_pick(data, "bundle_path", "bundlePath", "path", default="")),
            sibling_names=_str_list(_pick(data, "sibling_names", "siblingNames", "siblings", default=[])),
            keywords=_str_list(_pick(data, "keywords", "bundleKeywords", default=[])),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bundle_name": self.bundle_name,
            "bundle_path": self.bundle_path,
            "sibling_names": list(self.sibling_names),
            "keywords": list(self.keywords),
        }


@dataclass
class Classification:
    """An accepted (or candidate) genre assignment for a pack."""

    family: str
    style: str
    confidence: float
    method: ClassificationMethod = ClassificationMethod.TAXONOMIC
    reasoning: List[str] = field(default_factory=list)
    matched_keywords: List[str] = field(default_factory=list)
    applied_rules: List[str] = field(default_factory=list)
    alternatives: List[Dict[str, Any]] = field(default_factory=list)

    def inherited(self, bundle_name: str) -> "Classification":
        """Return a verbatim copy tagged as inherited from ``bundle_name``."""
        return Classification(
            family=self.family,
            style=self.style,
            confidence=self.confidence,
            method=ClassificationMethod.BUNDLE_INHERITED,
            reasoning=[f"Inherited from bundle '{bundle_name}'"] + list(self.reasoning),
            matched_keywords=list(self.matched_keywords),
            applied_rules=["bundle_inheritance"] + list(self.applied_rules),
            alternatives=[],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "family": self.family,
            "style": self.style,
            "confidence": round(float(self.confidence), 4),
            "method": self.method.value,
            "reasoning": list(self.reasoning),
            "matched_keywords": list(self.matched_keywords),
            "applied_rules": list(self.applied_rules),
            "alternatives": list(self.alternatives),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Classification":
        method = str(_pick(data, "method", default=ClassificationMethod.MANUAL.value))
        try:
            method_enum = ClassificationMethod(method)
        except ValueError:
            method_enum = ClassificationMethod.MANUAL
        return cls(
            family=str(data.get("family", "")),
            style=str(data.get("style", "")),
            confidence=float(data.get("confidence", 0.0) or 0.0),
            method=method_enum,
            reasoning=_str_list(data.get("reasoning")),
            matched_keywords=_str_list(_pick(data, "matched_keywords", "matchedKeywords", default=[])),
            applied_rules=_str_list(_pick(data, "applied_rules", "appliedRules", default=[])),
        )


@dataclass
class Pack:
    """A content pack (sample collection) to classify."""

    id: str
    name: str
    path: str = ""
    audio_files: int = 0
    preset_files: int = 0
    total_files: int = 0
    size: int = 0
    bpm: Optional[float] = None
    tags: List[str] = field(default_factory=list)
    taxonomy_matches: List[str] = field(default_factory=list)
    has_loops: bool = False
    has_one_shots: bool = False
    has_presets: bool = False
    internal_structure: Optional[InternalStructure] = None
    bundle_info: Optional[BundleInfo] = None
    classification: Optional[Classification] = None

    @property
    def file_count(self) -> int:
        return self.total_files or (self.audio_files + self.preset_files)

    @property
    def audio_ratio(self) -> float:
        total = self.file_count
        return self.audio_files / total if total else 0.0

    @property
    def preset_ratio(self) -> float:
        total = self.file_count
        return self.preset_files / total if total else 0.0

    def attach_classification(self, classification: Classification) -> None:
        self.classification = classification

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Pack":
        name = str(_pick(data, "name", "displayName", "packName", default=""))
        pack_id = str(_pick(data, "id", "packId", "pack_id", default=name))
        structure_raw = _pick(data, "internal_structure", "internalStructure")
        bundle_raw = _pick(data, "bundle_info", "bundleInfo")
        classification_raw = _pick(data, "classification")
        bpm = _pick(data, "bpm", "avgBpm", "averageTempo", "average_tempo")
        return cls(
            id=pack_id,
            name=name,
            path=str(_pick(data, "path", default="")),
            audio_files=int(_pick(data, "audio_files", "audioFiles", default=0) or 0),
            preset_files=int(_pick(data, "preset_files", "presetFiles", default=0) or 0),
            total_files=int(_pick(data, "total_files", "totalFiles", "fileCount", default=0) or 0),
            size=int(_pick(data, "size", "totalSize", default=0) or 0),
            bpm=float(bpm) if bpm is not None else None,
            tags=_str_list(_pick(data, "tags", default=[])),
            taxonomy_matches=_str_list(_pick(data, "taxonomy_matches", "taxonomyMatches", default=[])),
            has_loops=bool(_pick(data, "has_loops", "hasLoops", default=False)),
            has_one_shots=bool(_pick(data, "has_one_shots", "hasOneShots", default=False)),
            has_presets=bool(_pick(data, "has_presets", "hasPresets", default=False)),
            internal_structure=InternalStructure.from_dict(structure_raw) if isinstance(structure_raw, dict) else None,
            bundle_info=BundleInfo.from_dict(bundle_raw) if isinstance(bundle_raw, dict) else None,
            classification=Classification.from_dict(classification_raw) if isinstance(classification_raw, dict) else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "path": self.path,
            "audio_files": self.audio_files,
            "preset_files": self.preset_files,
            "total_files": self.total_files,
            "size": self.size,
            "bpm": self.bpm,
            "tags": list(self.tags),
            "taxonomy_matches": list(self.taxonomy_matches),
            "has_loops": self.has_loops,
            "has_one_shots": self.has_one_shots,
            "has_presets": self.has_presets,
            "internal_structure": self.internal_structure.to_dict() if self.internal_structure else None,
            "bundle_info": self.bundle_info.to_dict() if self.bundle_info else None,
            "classification": self.classification.to_dict() if self.classification else None,
        }


@dataclass
class NeedsAI:
    """Cascade signal: no stage settled the pack, ask the AI adapter."""

    pack: Pack
    candidate: Optional[Classification] = None
    reasons: List[str] = field(default_factory=list)


@dataclass
class Quarantine:
    """Soft failure: the pack waits for manual review."""

    pack: Pack
    reason: str
    candidate: Optional[Classification] = None
    manual_review: bool = True
    suggestions: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pack_id": self.pack.id,
            "pack_name": self.pack.name,
            "reason": self.reason,
            "manual_review": self.manual_review,
            "candidate": self.candidate.to_dict() if self.candidate else None,
            "suggestions": list(self.suggestions),
        }


CascadeResult = Union[Classification, NeedsAI, Quarantine]

"""Folder hierarchy proposals built from the adaptive matrix.

Three proposals are generated and ranked:

* ``taxonomic`` - Family / Type / Style / Function
* ``type_first`` - Type / Family / Style / Function
* ``adaptive`` - the Family/Type/Style axes ordered by how evenly files
  spread across their values (lowest variance first), then Function when
  it discriminates; never fewer than two levels.

Each proposal carries a preview tree whose root file totals add up to
the matrix total, a balance score over the root nodes and a compatibility
score.  The recommendation weighs balance, compatibility and simplicity
(shallow hierarchies preferred).
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from . import tuning
from .errors import StepFailure
from .fusion import FusionGroup
from .matrix import MatrixEntry, MatrixResult
from .models import Pack

logger = logging.getLogger(__name__)

AXES = ("Family", "Type", "Style")

PROPOSAL_TEXT: Dict[str, Dict[str, Any]] = {
    "taxonomic": {
        "name": "Taxonomic organisation",
        "description": "Family > Type > Style > Function",
        "advantages": [
            "Familiar layout for producers",
            "Groups sounds by musical genre",
            "Scales to new styles",
        ],
        "disadvantages": [
            "Folders can end up unbalanced",
            "Slower to browse by instrument",
            "Deep hierarchy",
        ],
    },
    "type_first": {
        "name": "Type-first organisation",
        "description": "Type > Family > Style > Function",
        "advantages": [
            "Fast browsing by instrument (KICKS, BASS...)",
            "Folders balanced by sound type",
            "Matches how tracks are built",
        ],
        "disadvantages": [
            "Genres are mixed at the top level",
            "Coherent packs get split across types",
        ],
    },
    "adaptive": {
        "name": "Adaptive organisation",
        "description": "Levels ordered by how evenly this collection spreads",
        "advantages": [
            "Tuned to this collection",
            "Keeps only the levels that discriminate",
        ],
        "disadvantages": [
            "Less standard layout",
            "Structure may change as the collection grows",
        ],
    },
}


@dataclass
class PreviewNode:
    level: int
    name: str
    path: str
    estimated_files: int = 0
    examples: List[str] = field(default_factory=list)
    children: List["PreviewNode"] = field(default_factory=list)

    def count_folders(self) -> int:
        return 1 + sum(child.count_folders() for child in self.children)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "level": self.level,
            "name": self.name,
            "path": self.path,
            "estimated_files": self.estimated_files,
            "examples": list(self.examples),
            "children": [c.to_dict() for c in self.children],
        }


@dataclass
class StructureProposal:
    id: str
    name: str
    description: str
    hierarchy: List[str]
    preview: List[PreviewNode]
    estimated_folders: int
    avg_files_per_folder: float
    balance_score: float
    compatibility_score: float
    advantages: List[str] = field(default_factory=list)
    disadvantages: List[str] = field(default_factory=list)
    fusion_aware: bool = False
    statistics: Dict[str, Any] = field(default_factory=dict)
    score: float = 0.0

    @property
    def levels(self) -> int:
        return len(self.hierarchy)

    @property
    def max_depth(self) -> int:
        return len(self.hierarchy)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "hierarchy": list(self.hierarchy),
            "levels": self.levels,
            "max_depth": self.max_depth,
            "estimated_folders": self.estimated_folders,
            "avg_files_per_folder": round(self.avg_files_per_folder, 2),
            "balance_score": round(self.balance_score, 4),
            "compatibility_score": round(self.compatibility_score, 4),
            "score": round(self.score, 4),
            "advantages": list(self.advantages),
            "disadvantages": list(self.disadvantages),
            "fusion_aware": self.fusion_aware,
            "statistics": dict(self.statistics),
            "preview": [node.to_dict() for node in self.preview],
        }


@dataclass
class ProposalSet:
    proposals: List[StructureProposal]
    recommendation: Dict[str, Any]
    complexity: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "proposals": [p.to_dict() for p in self.proposals],
            "recommendation": dict(self.recommendation),
            "complexity": dict(self.complexity),
        }


def level_value(entry: MatrixEntry, level: str) -> str:
    if level == "Family":
        return entry.family
    if level == "Type":
        return entry.type
    if level == "Style":
        return entry.style
    if level == "Function":
        return entry.functions[0] if entry.functions else "Mixed"
    if level == "Variant":
        return entry.variants[0] if entry.variants else "Standard"
    return "Unknown"


def build_preview(entries: Sequence[MatrixEntry], hierarchy: Sequence[str]) -> List[PreviewNode]:
    """Partition ``entries`` level by level; children sorted by file count."""
    roots: Dict[str, Tuple[PreviewNode, Dict[str, Any]]] = {}
    for entry in entries:
        level_nodes = roots
        path = ""
        for depth, level in enumerate(hierarchy):
            value = level_value(entry, level)
            path = f"{path}/{value}" if path else value
            if value not in level_nodes:
                level_nodes[value] = (PreviewNode(level=depth, name=value, path=path), {})
            node, children = level_nodes[value]
            node.estimated_files += entry.total_files
            if entry.examples and len(node.examples) < 3 and entry.examples[0] not in node.examples:
                node.examples.append(entry.examples[0])
            level_nodes = children
    return _finalise(roots)


def _finalise(nodes: Dict[str, Tuple[PreviewNode, Dict[str, Any]]]) -> List[PreviewNode]:
    for node, children in nodes.values():
        node.children = _finalise(children)
    return sorted((node for node, _ in nodes.values()), key=lambda n: (-n.estimated_files, n.name))


def balance_score(nodes: Sequence[PreviewNode]) -> float:
    if not nodes:
        return 1.0
    counts = [n.estimated_files for n in nodes]
    mean = sum(counts) / len(counts)
    if mean <= 0:
        return 1.0
    std = math.sqrt(sum((c - mean) ** 2 for c in counts) / len(counts))
    return max(0.0, 1.0 - std / mean)


def _variance(values: Sequence[float]) -> float:
    if not values:
        return 0.0
    mean = sum(values) / len(values)
    return sum((v - mean) ** 2 for v in values) / len(values)


def analyze_matrix(entries: Sequence[MatrixEntry]) -> Dict[str, Any]:
    """File-count distribution per axis plus function usage."""
    distributions: Dict[str, Dict[str, int]] = {axis: {} for axis in AXES}
    functions: Dict[str, int] = {}
    for entry in entries:
        for axis in AXES:
            bucket = distributions[axis]
            value = level_value(entry, axis)
            bucket[value] = bucket.get(value, 0) + entry.total_files
        for fn in entry.functions:
            functions[fn] = functions.get(fn, 0) + 1
    return {
        "distributions": distributions,
        "functions": functions,
        "total_files": sum(e.total_files for e in entries),
        "total_entries": len(entries),
    }


def adaptive_hierarchy(analysis: Dict[str, Any]) -> List[str]:
    ranked = sorted(
        AXES,
        key=lambda axis: _variance(list(analysis["distributions"][axis].values())),
    )
    levels = [ranked[0]]
    for axis in ranked[1:]:
        if len(analysis["distributions"][axis]) > 1:
            levels.append(axis)
    if len(analysis["functions"]) > 1:
        levels.append("Function")
    return levels if len(levels) >= 2 else ["Type", "Family"]


@dataclass
class StructureProposalGenerator:
    max_proposals: int = field(default_factory=lambda: tuning.MAX_PROPOSALS)
    weights: Dict[str, float] = field(default_factory=lambda: dict(tuning.PROPOSAL_WEIGHTS))

    def generate(
        self,
        matrix: Optional[MatrixResult],
        packs: Sequence[Pack],
        fusion_groups: Sequence[FusionGroup] = (),
    ) -> ProposalSet:
        """Rank folder hierarchy proposals for ``matrix``.

        Raises a recoverable :class:`StepFailure` when the matrix is empty
        or no packs are given; classifications are left untouched.
        """
        errors = []
        if matrix is None or not matrix.entries:
            errors.append("Empty or missing matrix")
        if not packs:
            errors.append("No classified packs provided")
        if errors:
            raise StepFailure("STRUCTURE_PROPOSAL_INPUT", "; ".join(errors), recoverable=True)

        entries = list(matrix.entries.values())
        analysis = analyze_matrix(entries)
        type_count = len(analysis["distributions"]["Type"])
        compat = {
            "taxonomic": sum(1 for e in entries if e.taxonomy_source) / len(entries),
            "type_first": min(1.0, type_count / 8.0),
            "adaptive": 0.9 if len(entries) > 10 else 0.7,
        }
        hierarchies = {
            "taxonomic": ["Family", "Type", "Style", "Function"],
            "type_first": ["Type", "Family", "Style", "Function"],
            "adaptive": adaptive_hierarchy(analysis),
        }

        proposals = []
        for proposal_id in ("taxonomic", "type_first", "adaptive"):
            proposals.append(
                self._proposal(proposal_id, hierarchies[proposal_id], entries, compat[proposal_id], analysis, fusion_groups)
            )
        proposals = proposals[: max(1, int(self.max_proposals))]

        recommendation = self.recommend(proposals)
        complexity = self.complexity(proposals, packs)
        logger.debug("Recommended structure: %s", recommendation["recommended_id"])
        return ProposalSet(proposals=proposals, recommendation=recommendation, complexity=complexity)

    def _proposal(
        self,
        proposal_id: str,
        hierarchy: List[str],
        entries: Sequence[MatrixEntry],
        compatibility: float,
        analysis: Dict[str, Any],
        fusion_groups: Sequence[FusionGroup],
    ) -> StructureProposal:
        preview = build_preview(entries, hierarchy)
        folders = sum(node.count_folders() for node in preview)
        text = PROPOSAL_TEXT[proposal_id]
        total_files = analysis["total_files"]
        return StructureProposal(
            id=proposal_id,
            name=text["name"],
            description=text["description"],
            hierarchy=list(hierarchy),
            preview=preview,
            estimated_folders=folders,
            avg_files_per_folder=total_files / folders if folders else 0.0,
            balance_score=balance_score(preview),
            compatibility_score=compatibility,
            advantages=list(text["advantages"]),
            disadvantages=list(text["disadvantages"]),
            fusion_aware=bool(fusion_groups),
            statistics={
                "estimated_folders": folders,
                "estimated_files": total_files,
                "fusion_groups": len(fusion_groups),
                "duplicates_resolved": sum(max(0, len(g.sources) - 1) for g in fusion_groups),
            },
        )

    @staticmethod
    def _parts(proposal: StructureProposal) -> Dict[str, float]:
        return {
            "balance": proposal.balance_score,
            "compatibility": proposal.compatibility_score,
            "simplicity": max(0.0, 1.0 - (proposal.levels - 2) / 4.0),
        }

    @staticmethod
    def _reason(proposal: StructureProposal, parts: Dict[str, float]) -> str:
        strengths = []
        if parts["balance"] > 0.7:
            strengths.append("well balanced")
        if parts["compatibility"] > 0.8:
            strengths.append("highly compatible")
        if parts["simplicity"] > 0.7:
            strengths.append("easy to navigate")
        summary = ", ".join(strengths) if strengths else "best overall trade-off"
        return f"{proposal.name}: {summary} (score: {proposal.score:.2f})"

    def recommend(self, proposals: Sequence[StructureProposal]) -> Dict[str, Any]:
        scored = []
        for proposal in proposals:
            parts = self._parts(proposal)
            proposal.score = sum(value * self.weights.get(name, 0.0) for name, value in parts.items())
            scored.append((proposal, parts))
        # Stable sort keeps generation order among equal scores
        scored.sort(key=lambda item: -item[0].score)
        winner, winner_parts = scored[0]
        return {
            "recommended_id": winner.id,
            "reason": self._reason(winner, winner_parts),
            "confidence": round(winner.score, 4),
            "alternatives": [
                {"id": p.id, "reason": self._reason(p, parts), "score": round(p.score, 4)}
                for p, parts in scored[1:]
            ],
        }

    @staticmethod
    def complexity(proposals: Sequence[StructureProposal], packs: Sequence[Pack]) -> Dict[str, Any]:
        avg_folders = sum(p.estimated_folders for p in proposals) / len(proposals)
        avg_depth = sum(p.max_depth for p in proposals) / len(proposals)
        organisational = min(1.0, avg_folders * avg_depth / 100.0)
        limits = tuning.PROPOSAL_FOLDER_LIMITS

        risks = []
        if organisational > 0.7:
            risks.append("Complex structure")
        if avg_depth > 4:
            risks.append("Deep hierarchy")
        if len(packs) > 100:
            risks.append("Large collection")
        if any(p.avg_files_per_folder < limits["min_files"] for p in proposals):
            risks.append("Sparse folders")
        if any(p.avg_files_per_folder > limits["max_files"] for p in proposals):
            risks.append("Overloaded folders")

        return {
            "organizational_complexity": round(organisational, 4),
            "user_decision_points": 1 if len(proposals) > 1 else 0,
            "estimated_time_minutes": int(math.ceil(avg_folders / 50.0)) + 2,
            "risk_factors": risks,
        }

"""Pipeline engine for pack-taxonomy.

The :class:`PackTaxonomyEngine` ties the services together for one run:

1. bundle pre-classification (cache passed in by the caller, extended and
   returned in the report),
2. the per-pack classification cascade, with packs the cascade defers
   sent to the AI fallback in sequential batches,
3. folder clustering over every pack's internal folders,
4. fusion groups from the clusters and the classified packs,
5. the adaptive matrix and the ranked structure proposals.

Each step can also be called on its own.  The matrix and proposal steps
raise :class:`~pack_taxonomy.errors.StepFailure` on unusable input;
:meth:`PackTaxonomyEngine.run` records those failures in the report and
keeps every earlier result (classifications in particular) intact.

Design notes:
- Packs are inputs; the only mutation is attaching a classification.
- A run holds no state between calls: everything a later run may reuse
  (the bundle cache) is returned to the caller.
- Cancellation is cooperative through a ``threading.Event``.  The AI batch
  in flight finishes; packs not yet submitted are quarantined as
  ``cancelled``.
"""

from __future__ import annotations

import datetime
import logging
import sys
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, TypedDict

from .ai_fallback import AIFallbackAdapter, OpenAIChatAdapter, submit_in_batches
from .bundles import BundleCache, BundlePreClassifier
from .classifier import build_quarantine, classify, resolve_needs_ai
from .clustering import FolderCluster, FolderClusterEngine, build_similarity_matrix
from .config_service import RunConfig
from .errors import StepFailure
from .fusion import FusionGroup, FusionGroupBuilder, extract_folder_paths
from .matrix import MatrixGenerator, MatrixResult
from .models import Classification, NeedsAI, Pack, Quarantine
from .proposals import ProposalSet, StructureProposalGenerator
from .similarity import SimilarityScorer
from .taxonomy import TaxonomyIndex, default_index

logger = logging.getLogger(__name__)

ALL_STEPS = ("classify", "cluster", "matrix", "propose")


class PackEntry(TypedDict, total=False):
    pack_id: str
    pack: str
    status: str
    classification: Dict[str, Any]
    quarantine: Dict[str, Any]
    steps: List[str]


class RunReport(TypedDict, total=False):
    run_id: str
    timestamp: str
    steps: List[str]
    statistics: Dict[str, Any]
    packs: List[PackEntry]
    bundles: Dict[str, Any]
    ai: Dict[str, Any]
    clusters: List[Dict[str, Any]]
    cluster_validation: Dict[str, Any]
    fusion_groups: List[Dict[str, Any]]
    matrix: Dict[str, Any]
    proposals: Dict[str, Any]
    errors: List[Dict[str, Any]]


@dataclass
class ClassificationOutcome:
    classified: List[Pack] = field(default_factory=list)
    quarantined: List[Quarantine] = field(default_factory=list)
    entries: List[PackEntry] = field(default_factory=list)
    bundle_cache: BundleCache = field(default_factory=dict)
    bundle_stats: Dict[str, Any] = field(default_factory=dict)
    ai_stats: Dict[str, Any] = field(default_factory=dict)

    def statistics(self) -> Dict[str, Any]:
        by_method: Dict[str, int] = {}
        for pack in self.classified:
            method = pack.classification.method.value
            by_method[method] = by_method.get(method, 0) + 1
        confidences = [p.classification.confidence for p in self.classified]
        cancelled = sum(1 for q in self.quarantined if q.reason == "cancelled")
        return {
            "total_packs": len(self.entries),
            "classified": len(self.classified),
            "quarantined": len(self.quarantined) - cancelled,
            "cancelled": cancelled,
            "by_method": by_method,
            "avg_confidence": round(sum(confidences) / len(confidences), 4) if confidences else 0.0,
        }


@dataclass
class PackTaxonomyEngine:
    """Classify packs and derive clusters, fusion groups and proposals."""

    index: TaxonomyIndex = field(default_factory=default_index)
    config: RunConfig = field(default_factory=RunConfig)
    adapter: Optional[AIFallbackAdapter] = None
    workers: int = 1
    sleep: Optional[Callable[[float], None]] = field(default=None, repr=False)

    def __post_init__(self) -> None:
        if self.adapter is None and self.config.ai_endpoint:
            self.adapter = OpenAIChatAdapter(
                endpoint=self.config.ai_endpoint,
                api_key=self.config.ai_api_key,
                model=self.config.ai_model,
                families={f.name: list(f.styles) for f in self.index},
            )

    def _sleep_kwargs(self) -> Dict[str, Any]:
        return {"sleep": self.sleep} if self.sleep is not None else {}

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------
    def classify_packs(
        self,
        packs: Sequence[Pack],
        bundle_cache: Optional[BundleCache] = None,
        cancel_event: Optional[threading.Event] = None,
        log: Callable[[str], None] = logger.info,
    ) -> ClassificationOutcome:
        cascade = self.config.cascade
        outcome = ClassificationOutcome()
        pre = BundlePreClassifier(
            index=self.index,
            config=cascade,
            adapter=self.adapter,
            batch_size=self.config.ai_batch_size,
            batch_delay=self.config.ai_batch_delay_seconds,
        )
        outcome.bundle_cache, outcome.bundle_stats = pre.pre_classify(
            packs, bundle_cache=bundle_cache, cancel_event=cancel_event, **self._sleep_kwargs()
        )
        if outcome.bundle_stats["bundles"]:
            log(
                f"Bundles: {outcome.bundle_stats['bundles']} "
                f"(cached={outcome.bundle_stats['cached']} unresolved={outcome.bundle_stats['unresolved']})"
            )

        results: Dict[str, Any] = {}
        trails: Dict[str, List[str]] = {}
        deferred: List[NeedsAI] = []
        for pack in packs:
            trail: List[str] = []
            trails[pack.id] = trail
            if cancel_event is not None and cancel_event.is_set():
                results[pack.id] = build_quarantine(pack, ["cancelled"])
                continue
            bundle = outcome.bundle_cache.get(pack.bundle_info.key) if pack.bundle_info else None
            result = classify(pack, self.index, bundle_classification=bundle, config=cascade, steps=trail)
            if isinstance(result, NeedsAI):
                deferred.append(result)
            results[pack.id] = result

        outcome.ai_stats = {"deferred": len(deferred), "requests": 0, "failed": 0, "batches": []}
        if deferred:
            log(f"AI fallback: {len(deferred)} packs in batches of {self.config.ai_batch_size}")
            ai = submit_in_batches(
                [n.pack for n in deferred],
                self.adapter,
                batch_size=self.config.ai_batch_size,
                delay=self.config.ai_batch_delay_seconds,
                cancel_event=cancel_event,
                **self._sleep_kwargs(),
            )
            outcome.ai_stats.update(
                requests=ai.requests_used,
                failed=len(ai.failures),
                batches=ai.batches,
                cancelled=len(ai.cancelled),
            )
            cancelled = set(ai.cancelled)
            for needs in deferred:
                pack_id = needs.pack.id
                if pack_id in cancelled:
                    results[pack_id] = build_quarantine(needs.pack, ["cancelled"], [needs.candidate])
                    trails[pack_id].append("ai: cancelled")
                    continue
                results[pack_id] = resolve_needs_ai(
                    needs,
                    ai.results.get(pack_id),
                    failure=ai.failures.get(pack_id),
                    fallback=ai.fallbacks.get(pack_id),
                    config=cascade,
                )
                trails[pack_id].append(f"ai: {ai.failures.get(pack_id, 'answered')}")

        for pack in packs:
            result = results[pack.id]
            entry: PackEntry = {"pack_id": pack.id, "pack": pack.name, "steps": trails[pack.id]}
            if isinstance(result, Classification):
                pack.attach_classification(result)
                outcome.classified.append(pack)
                entry["status"] = "classified"
                entry["classification"] = result.to_dict()
            else:
                outcome.quarantined.append(result)
                entry["status"] = "cancelled" if result.reason == "cancelled" else "quarantined"
                entry["quarantine"] = result.to_dict()
            outcome.entries.append(entry)
        return outcome

    # ------------------------------------------------------------------
    # Clustering and fusion
    # ------------------------------------------------------------------
    def cluster_folders(self, packs: Sequence[Pack]) -> Tuple[List[FolderCluster], Dict[str, Any]]:
        """Cluster the packs' folders and validate the result against one matrix."""
        folders = extract_folder_paths(packs)
        engine = FolderClusterEngine(SimilarityScorer(), self.config.clustering)
        if self.workers > 1:
            with ThreadPoolExecutor(max_workers=self.workers) as executor:
                matrix = build_similarity_matrix(folders, engine.scorer, executor)
        else:
            matrix = build_similarity_matrix(folders, engine.scorer)
        clusters = engine.cluster_matrix(folders, matrix)
        return clusters, engine.validate(clusters, matrix=matrix)

    def build_fusion_groups(self, clusters: Sequence[FolderCluster], packs: Sequence[Pack]) -> List[FusionGroup]:
        return FusionGroupBuilder(self.config.fusion).build(clusters, packs)

    # ------------------------------------------------------------------
    # Matrix and proposals
    # ------------------------------------------------------------------
    def build_matrix(
        self,
        packs: Sequence[Pack],
        fusion_groups: Sequence[FusionGroup] = (),
        clusters: Sequence[FolderCluster] = (),
    ) -> MatrixResult:
        return MatrixGenerator(self.index, self.config.matrix).build(packs, fusion_groups, clusters)

    def propose(
        self,
        matrix: Optional[MatrixResult],
        packs: Sequence[Pack],
        fusion_groups: Sequence[FusionGroup] = (),
    ) -> ProposalSet:
        generator = StructureProposalGenerator(
            max_proposals=self.config.max_proposals,
            weights=dict(self.config.proposal_weights),
        )
        return generator.generate(matrix, packs, fusion_groups)

    # ------------------------------------------------------------------
    # Full run
    # ------------------------------------------------------------------
    def run(
        self,
        packs: Sequence[Pack],
        steps: Sequence[str] = ALL_STEPS,
        bundle_cache: Optional[BundleCache] = None,
        cancel_event: Optional[threading.Event] = None,
        log_callback: Optional[Callable[[str], None]] = None,
        log_to_console: bool = False,
    ) -> Dict[str, Any]:
        """Execute the requested steps and return the report dict.

        ``steps`` is any subset of ``classify``, ``cluster``, ``matrix``
        and ``propose``; the matrix and proposal steps need
        classifications, so packs without one are classified first.
        """
        unknown = [s for s in steps if s not in ALL_STEPS]
        if unknown:
            raise ValueError(f"Unknown steps: {', '.join(unknown)}")

        def _emit_log(msg: str) -> None:
            logger.info(msg)
            if log_to_console:
                print(msg, file=sys.stderr)
            if log_callback is not None:
                try:
                    log_callback(msg)
                except Exception:
                    logger.debug("log_callback raised", exc_info=True)

        run_id = datetime.datetime.now().strftime("%Y%m%d_%H%M%S_") + uuid.uuid4().hex[:8]
        report: RunReport = {
            "run_id": run_id,
            "timestamp": datetime.datetime.now().isoformat(),
            "steps": list(steps),
            "statistics": {},
            "errors": [],
        }
        _emit_log(f"pack-taxonomy run_id={run_id} steps={','.join(steps)}")
        _emit_log(f"Packs received: {len(packs)} taxonomy={self.index.source} families={len(self.index)}")

        needs_classification = any(s in steps for s in ("classify", "matrix", "propose"))
        classified: List[Pack] = [p for p in packs if p.classification is not None]
        if needs_classification and ("classify" in steps or len(classified) < len(packs)):
            todo = [p for p in packs if "classify" in steps or p.classification is None]
            outcome = self.classify_packs(todo, bundle_cache, cancel_event, log=_emit_log)
            classified = [p for p in packs if p.classification is not None]
            report["packs"] = outcome.entries
            report["bundles"] = {
                "cache": {k: v.to_dict() for k, v in outcome.bundle_cache.items()},
                "statistics": outcome.bundle_stats,
            }
            report["ai"] = outcome.ai_stats
            report["statistics"].update(outcome.statistics())
            _emit_log(
                f"Classified={len(outcome.classified)} quarantined={len(outcome.quarantined)}"
            )

        clusters: List[FolderCluster] = []
        fusion_groups: List[FusionGroup] = []
        if "cluster" in steps or "propose" in steps:
            clusters, validation = self.cluster_folders(packs)
            fusion_groups = self.build_fusion_groups(clusters, packs)
            report["clusters"] = [c.to_dict() for c in clusters]
            report["cluster_validation"] = validation
            report["fusion_groups"] = [g.to_dict() for g in fusion_groups]
            report["statistics"]["clusters"] = len(clusters)
            report["statistics"]["fusion_groups"] = len(fusion_groups)
            _emit_log(f"Clusters={len(clusters)} fusion_groups={len(fusion_groups)}")

        matrix: Optional[MatrixResult] = None
        if "matrix" in steps or "propose" in steps:
            try:
                matrix = self.build_matrix(classified, fusion_groups, clusters)
                report["matrix"] = matrix.to_dict()
                _emit_log(f"Matrix entries={len(matrix.entries)}")
            except StepFailure as exc:
                logger.warning("Matrix step failed: %s", exc.message)
                report["errors"].append(exc.to_dict({"step": "matrix"}))

        if "propose" in steps:
            try:
                proposals = self.propose(matrix, classified, fusion_groups)
                report["proposals"] = proposals.to_dict()
                _emit_log(f"Recommended structure: {proposals.recommendation['recommended_id']}")
            except StepFailure as exc:
                logger.warning("Proposal step failed: %s", exc.message)
                report["errors"].append(exc.to_dict({"step": "propose"}))

        _emit_log(f"Done. errors={len(report['errors'])}")
        return dict(report)

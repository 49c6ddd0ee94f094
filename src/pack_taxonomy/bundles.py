"""Bundle pre-classification.

Packs shipped together in a bundle ("Producer Loops Mega Bundle / ...")
usually share a genre, and the bundle name is often more telling than
any one child name.  Before the per-pack cascade runs, every bundle is
classified once:

1. taxonomic scoring on a synthetic record built from the bundle name
   alone (child names such as "Kicks" or "Vol 2" would only add noise);
2. taxonomic scoring on the bundle name plus its child names;
3. the AI fallback, with the child names as context;
4. otherwise the bundle stays unresolved and is left out of the cache,
   so a later run retries it.

Only stage 1/2 results at the skip bar are accepted.  AI answers are kept
whatever their confidence: whether children may inherit is decided later
by the cascade's inheritance bar.

The bundle cache is a plain dict owned by the caller.  It is passed in,
copied, extended and returned, so repeated runs can reuse earlier bundle
decisions without any module-level state.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .ai_fallback import AIFallbackAdapter, submit_in_batches
from .classifier import CascadeConfig, score_taxonomic
from .models import Classification, InternalStructure, Pack
from .taxonomy import TaxonomyIndex

logger = logging.getLogger(__name__)

BundleCache = Dict[str, Classification]


def group_by_bundle(packs: Sequence[Pack]) -> "OrderedDict[str, List[Pack]]":
    """Group packs by bundle key, preserving first-seen order."""
    groups: "OrderedDict[str, List[Pack]]" = OrderedDict()
    for pack in packs:
        if pack.bundle_info is None or not pack.bundle_info.key:
            continue
        groups.setdefault(pack.bundle_info.key, []).append(pack)
    return groups


def _child_names(members: Sequence[Pack]) -> List[str]:
    names: Dict[str, None] = {}
    for pack in members:
        names.setdefault(pack.name, None)
        for sibling in pack.bundle_info.sibling_names if pack.bundle_info else []:
            names.setdefault(sibling, None)
    return list(names)


def _synthetic_pack(key: str, bundle_name: str, tags: List[str]) -> Pack:
    return Pack(
        id=f"bundle:{key}",
        name=bundle_name,
        path=key,
        tags=tags,
        internal_structure=InternalStructure(subfolders=[t for t in tags if t != bundle_name]),
    )


@dataclass
class BundlePreClassifier:
    index: TaxonomyIndex
    config: CascadeConfig = field(default_factory=CascadeConfig)
    adapter: Optional[AIFallbackAdapter] = None
    batch_size: Optional[int] = None
    batch_delay: Optional[float] = None

    def pre_classify(
        self,
        packs: Sequence[Pack],
        bundle_cache: Optional[BundleCache] = None,
        cancel_event: Optional[threading.Event] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> Tuple[BundleCache, Dict[str, Any]]:
        """Classify every bundle not already in ``bundle_cache``.

        Returns the extended cache and a statistics dict.
        """
        cache: BundleCache = {k: v for k, v in (bundle_cache or {}).items() if v is not None}
        stats: Dict[str, Any] = {
            "bundles": 0,
            "cached": 0,
            "name_only": 0,
            "with_children": 0,
            "ai_classified": 0,
            "unresolved": 0,
            "ai_requests": 0,
            "steps": {},
        }
        skip_bar = self.config.skip_confidence_threshold
        pending: List[Pack] = []

        for key, members in group_by_bundle(packs).items():
            stats["bundles"] += 1
            if key in cache:
                stats["cached"] += 1
                continue
            bundle_name = members[0].bundle_info.bundle_name or key
            steps: List[str] = []
            stats["steps"][key] = steps

            name_only = score_taxonomic(_synthetic_pack(key, bundle_name, [bundle_name]), self.index)
            if name_only.candidate and name_only.confidence >= skip_bar:
                name_only.candidate.applied_rules.append("bundle_name_taxonomic")
                cache[key] = name_only.candidate
                stats["name_only"] += 1
                steps.append(f"bundle name: {name_only.candidate.family} ({name_only.confidence:.2f})")
                continue
            steps.append(f"bundle name: {name_only.confidence:.2f} below skip bar")

            children = _child_names(members)
            synthetic = _synthetic_pack(key, bundle_name, [bundle_name] + children)
            with_children = score_taxonomic(synthetic, self.index)
            if with_children.candidate and with_children.confidence >= skip_bar:
                with_children.candidate.applied_rules.append("bundle_children_taxonomic")
                cache[key] = with_children.candidate
                stats["with_children"] += 1
                steps.append(f"bundle + children: {with_children.candidate.family} ({with_children.confidence:.2f})")
                continue
            steps.append(f"bundle + children: {with_children.confidence:.2f} below skip bar")
            pending.append(synthetic)

        if pending and self.config.ai_enabled and self.adapter is not None:
            outcome = submit_in_batches(
                pending,
                self.adapter,
                batch_size=self.batch_size,
                delay=self.batch_delay,
                cancel_event=cancel_event,
                sleep=sleep,
            )
            stats["ai_requests"] = outcome.requests_used
            for synthetic in pending:
                key = synthetic.path
                result = outcome.results.get(synthetic.id)
                if result is not None:
                    result.applied_rules.append("bundle_ai")
                    cache[key] = result
                    stats["ai_classified"] += 1
                    stats["steps"][key].append(f"ai: {result.family} ({result.confidence:.2f})")
                else:
                    stats["unresolved"] += 1
                    stats["steps"][key].append(f"ai: {outcome.failures.get(synthetic.id, 'cancelled')}")
        else:
            for synthetic in pending:
                stats["unresolved"] += 1
                stats["steps"][synthetic.path].append("ai: unavailable")

        if stats["unresolved"]:
            logger.info("%d of %d bundles left unresolved", stats["unresolved"], stats["bundles"])
        return cache, stats

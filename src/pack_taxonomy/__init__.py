"""pack-taxonomy package

Classifies unlabeled sample packs into a genre taxonomy, clusters
equivalent folders across packs into fusion groups, and proposes ranked
folder hierarchies for the reorganised library.  Public classes are
re-exported here for convenience.
"""

from .classifier import CascadeConfig, classify, resolve_needs_ai  # noqa: F401
from .clustering import ClusterConfig, FolderClusterEngine  # noqa: F401
from .config_service import ConfigService, RunConfig  # noqa: F401
from .engine import PackTaxonomyEngine  # noqa: F401
from .errors import StepFailure  # noqa: F401
from .fusion import FusionGroupBuilder  # noqa: F401
from .matrix import MatrixGenerator  # noqa: F401
from .models import Classification, Pack, Quarantine  # noqa: F401
from .proposals import StructureProposalGenerator  # noqa: F401
from .similarity import SimilarityScorer  # noqa: F401
from .taxonomy import TaxonomyIndex, default_index  # noqa: F401

__version__ = "0.1.0"

__all__ = [
    "CascadeConfig",
    "classify",
    "resolve_needs_ai",
    "ClusterConfig",
    "FolderClusterEngine",
    "ConfigService",
    "RunConfig",
    "PackTaxonomyEngine",
    "StepFailure",
    "FusionGroupBuilder",
    "MatrixGenerator",
    "Classification",
    "Pack",
    "Quarantine",
    "StructureProposalGenerator",
    "SimilarityScorer",
    "TaxonomyIndex",
    "default_index",
]

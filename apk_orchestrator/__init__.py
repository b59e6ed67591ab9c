"""Remote build orchestrator that turns uploaded Android projects into APKs."""

from .coordinator import Claim, Coordinator
from .errors import FailureCause, RejectedAdmission
from .models import BuildRequest, BuildState
from .store import ArtifactStore

__version__ = "0.1.0"

__all__ = [
    "ArtifactStore",
    "BuildRequest",
    "BuildState",
    "Claim",
    "Coordinator",
    "FailureCause",
    "RejectedAdmission",
    "__version__",
]

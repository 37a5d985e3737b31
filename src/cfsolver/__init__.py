"""
CFSolver - Cloudflare challenge solving client for the CloudFlyer API

    from cfsolver import CloudflareSolver

    with CloudflareSolver("your-api-key") as solver:
        response = solver.get("https://protected-site.com")
"""

from .schemas.session import PollingMode, SessionConfig
from .schemas.task import TaskDescriptor, TaskResult, TaskSolution, TaskType
from .services.solver.cookies import CookieJar
from .services.solver.detector import ChallengeDetector
from .services.solver.exceptions import (
    CFSolverAPIError,
    CFSolverChallengeError,
    CFSolverConnectionError,
    CFSolverException,
    CFSolverTimeoutError,
)
from .services.solver.orchestrator import CloudflareSolver
from .services.solver.response import Response
from .services.tools.provisioner import ToolProvisioner, ToolProvisionerConfig, ToolSpec

__version__ = "0.2.0"

__all__ = [
    "CloudflareSolver",
    "SessionConfig",
    "PollingMode",
    "Response",
    "CookieJar",
    "ChallengeDetector",
    "TaskType",
    "TaskDescriptor",
    "TaskResult",
    "TaskSolution",
    "ToolProvisioner",
    "ToolProvisionerConfig",
    "ToolSpec",
    "CFSolverException",
    "CFSolverConnectionError",
    "CFSolverChallengeError",
    "CFSolverTimeoutError",
    "CFSolverAPIError",
]

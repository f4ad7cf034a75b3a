"""Java runtime discovery, compatibility and managed installs."""

from .compat import is_compatible, parse_major_version, required_major_version
from .detector import JavaDetector, probe_java
from .manager import JavaEnvironmentManager
from .models import JavaInstallation

__all__ = [
    "is_compatible",
    "JavaDetector",
    "JavaEnvironmentManager",
    "JavaInstallation",
    "parse_major_version",
    "probe_java",
    "required_major_version",
]

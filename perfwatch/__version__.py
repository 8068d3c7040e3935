"""Version information for the perfwatch monitoring core."""

__version__ = "1.0.0"
__version_info__ = tuple(
    int(part) if part.isdigit() else part
    for part in __version__.replace("-", ".").split(".")
)

RELEASE_STATUS = "stable"
MODULE_NAME = "perfwatch"
MODULE_LICENSE = "MIT"

# Feature flags
FEATURES = {
    "weighted_aggregation": True,
    "health_scoring": True,
    "time_bucketing": True,
    "anomaly_detection": True,
    "bottleneck_detection": True,
    "trend_forecasting": True,
    "optimization_planning": True,
    "threshold_alerting": True,
    "seasonal_patterns": False,
}


def get_version_string() -> str:
    """Get formatted version string."""
    return f"perfwatch v{__version__}"


def get_full_version_info() -> dict:
    """Get complete version information."""
    return {
        "version": __version__,
        "version_info": __version_info__,
        "release_status": RELEASE_STATUS,
        "module_name": MODULE_NAME,
        "features": dict(FEATURES),
    }

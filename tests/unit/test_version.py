"""
Unit tests for perfwatch.__version__
"""

import perfwatch
from perfwatch.__version__ import FEATURES, get_full_version_info, get_version_string


def test_version_string():
    assert get_version_string() == f"perfwatch v{perfwatch.__version__}"


def test_full_version_info():
    info = get_full_version_info()

    assert info["version"] == perfwatch.__version__
    assert info["version_info"][0] == 1
    assert info["features"] == FEATURES
    assert info["features"] is not FEATURES
    assert info["features"]["seasonal_patterns"] is False

"""
Root conftest.py for perfwatch.

Ensures the project root is on sys.path before any tests are collected, so
the suite runs from a plain checkout without installing the package.
"""

import os
import sys

project_root = os.path.dirname(os.path.abspath(__file__))
if project_root not in sys.path:
    sys.path.insert(0, project_root)

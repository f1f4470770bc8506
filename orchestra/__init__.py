"""
Orchestra - numbered-script playbook engine.

Resolves playbooks of numbered automation scripts into dependency-ordered
stages and runs them sequentially or in parallel.
"""

__version__ = "0.1.0"
__author__ = "Orchestra Team"

from orchestra.core.orchestrator import Orchestrator

__all__ = ["Orchestrator", "__version__"]

"""
Hive - Task Pipeline Orchestrator
=================================

Drives tasks through implement, verify, test and deploy, one external
agent run per stage.
"""

__version__ = "0.1.0"

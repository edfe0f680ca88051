"""
convergence-orchestrator: a workflow convergence engine.

Builds a dependency graph of opaque tasks, runs them with bounded parallelism,
deduplicates and ranks the findings they report, gates the result on severity
counts, and loops remediation until the gate passes or the run escalates.

Importing the package has no side effects: no config loading, no logging setup.
"""

__version__ = "0.1.0"

__all__ = ["__version__"]

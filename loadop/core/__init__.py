"""
Core Package

Reconciliation logic for distributed test runs.

Modules:
- segmentation: execution segment partitioning
- conditions: condition/stage tracking per run
- resources / orchestrator: building and creating runner workloads
- agent_client / dispatch: runner control API and command fan-out
- reconciler: the per-run state machine
- scheduler: requeue-driven invocation of the reconciler
- controller: wiring used by the HTTP API
"""

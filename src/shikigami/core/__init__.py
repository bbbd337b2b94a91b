"""Task dependency graph, readiness promotion and claim engine.

Components share one SQLModel session per unit of work
(see ``shikigami.core.repository``): ``TaskStore`` owns task rows,
``DependencyGraph`` owns typed edges, ``ReadinessResolver`` promotes
``blocked`` tasks whose blocking targets are all ``done``,
``ClaimStateMachine`` guards lifecycle transitions and ``HistoryLog`` keeps
the audit trail and the handoff/learning ledger.
"""

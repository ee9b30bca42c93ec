"""Operator engine for multi-stack infrastructure orchestration.

Schedules provisioning units into dependency layers, wires outputs between
them through the output registry, and applies rendered manifests with
readiness gating.

Package name uses 'stack_opr' (short for operator) to keep it apart from
the 'stacks' package of deployable unit kinds.
"""

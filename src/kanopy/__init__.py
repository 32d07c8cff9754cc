"""
Kanopy - Blueprint execution engine.

Blueprints describe reusable multi-phase operations (backup, restore,
delete); ActionSets request concrete runs of them against target objects.
The engine resolves bindings, renders templated phase arguments, runs
phases through a registry of pluggable functions and persists per-phase
and per-action status under optimistic concurrency.

Quick start::

    from kanopy.engine import ActionSetReconciler
    from kanopy.functions import register_function

    @register_function("CreateSnapshot", required_args=["0"])
    def create_snapshot(ctx, args):
        return {"snapshotId": take_snapshot(args["0"])}

    ActionSetReconciler(store).reconcile(actionset_ref("nightly", "prod"))
"""

__version__ = "0.1.0"

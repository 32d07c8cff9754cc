"""
Kanopy Engine: phases, actions and ActionSets.

WHY
───
A Blueprint action is a small workflow: ordered phases whose outputs feed
later phases.  An ActionSet runs several of them at once against different
objects and reports one aggregate state.

ARCHITECTURE
────────────
::

    Controller              ─ store events → reconcile / cancel
      └── ActionSetReconciler   ─ status init, dispatch, aggregate, CAS writes
            └── ActionController    ─ resolve bindings, output artifacts
                  └── PhaseRunner       ─ render → lookup → validate → execute
"""

from kanopy.engine.action_controller import ActionController
from kanopy.engine.controller import Controller
from kanopy.engine.phase_runner import PhaseRunner, PhaseRunResult
from kanopy.engine.reconciler import ActionSetReconciler

__all__ = ["ActionController", "ActionSetReconciler", "Controller", "PhaseRunResult", "PhaseRunner"]

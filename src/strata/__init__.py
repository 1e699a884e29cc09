"""strata - dependency-ordered provisioning and target-tracking autoscaling

Philosophy:
- Ruthless simplicity
- Brick architecture (self-contained modules)
- Explicit state (ObservedState lives in a store passed in, never a global)
- Fail fast on structural errors, isolate per-resource failures

strata turns typed, cross-referencing resource declarations into an ordered
create/update/delete plan, applies it against a remote control plane, and
keeps services sized with a closed-loop autoscaling controller.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]

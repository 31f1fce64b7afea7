from double_optin.scheduler.main import SWEEP_LOCK, SweepResult, run_sweep, scheduler_loop

__all__ = [
    "SWEEP_LOCK",
    "SweepResult",
    "run_sweep",
    "scheduler_loop",
]

"""Background workers for periodic sweeps and notification relay."""
from .notification_relay import start_notification_relay
from .sweep_worker import run_sweeps_once, start_sweep_worker

__all__ = ["run_sweeps_once", "start_notification_relay", "start_sweep_worker"]

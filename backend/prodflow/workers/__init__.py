from .sync_loop import run_sync_loop, run_sync_once

__all__ = ["run_sync_loop", "run_sync_once"]

from .run_manager import RunManager, RunRecord

__all__ = ['RunManager', 'RunRecord']

from stepgrader.process.launcher import resolve_command
from stepgrader.process.manager import ManagedProcess, ProcessManager, kill_process_tree

__all__ = ["ManagedProcess", "ProcessManager", "kill_process_tree", "resolve_command"]

from appblock.remote.base import EnforcementClient, RecurringWindow, RemotePolicy

__all__ = ["EnforcementClient", "RecurringWindow", "RemotePolicy"]

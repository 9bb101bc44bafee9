from .service import OrchestrationService, OrgSnapshot, RunReport

__all__ = ["OrchestrationService", "OrgSnapshot", "RunReport"]

class BuildClientError(Exception):
    """Base exception for build status client errors."""
    pass


class StatusFetchError(BuildClientError):
    def __init__(self, entity_id: str, reason: str):
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(f"Status fetch for {entity_id} failed: {reason}")


class OrchestratorClosedError(BuildClientError):
    def __init__(self):
        super().__init__("Orchestrator has been disposed")

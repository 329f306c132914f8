"""n8n HTTP client."""

from workflow_deploy_agent.client.config import Settings
from workflow_deploy_agent.client.engine_client import EngineClient, is_error

__all__ = ["EngineClient", "Settings", "is_error"]

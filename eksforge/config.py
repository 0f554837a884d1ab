"""
Configuration management for eksforge
Environment-sourced defaults that flags may override
"""

import os
from typing import Dict, Mapping, Optional

from eksforge.api import DEFAULT_WAIT_TIMEOUT, PROJECT_NAME


class Config:
    """Centralized runtime configuration read from the environment"""

    def __init__(self, environ: Optional[Mapping[str, str]] = None):
        self.environ = os.environ if environ is None else environ

        # AWS Configuration
        self.aws_profile = self.environ.get("AWS_PROFILE") or ""
        self.aws_region = self.environ.get("AWS_REGION") or self.environ.get("AWS_DEFAULT_REGION") or ""

        # Polling
        self.wait_timeout = float(self.environ.get("EKSFORGE_WAIT_TIMEOUT") or DEFAULT_WAIT_TIMEOUT)
        self.poll_interval = float(self.environ.get("EKSFORGE_POLL_INTERVAL") or 5.0)
        self.max_poll_interval = float(self.environ.get("EKSFORGE_MAX_POLL_INTERVAL") or 30.0)

        # Provisioning state backend
        self.state_dir = self.environ.get("EKSFORGE_STATE_DIR") or os.path.expanduser("~/.eksforge/state")
        self.backend_url = self.environ.get("PULUMI_BACKEND_URL") or f"file://{self.state_dir}"
        self.project_name = self.environ.get("EKSFORGE_PROJECT") or PROJECT_NAME

        # Logging
        self.log_level = (self.environ.get("EKSFORGE_LOG_LEVEL") or "INFO").upper()

    def common_tags(self, cluster_name: str, extra: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
        """Get common tags for all resources of a cluster"""
        base_tags = {
            "eksforge.io/cluster-name": cluster_name,
            "ManagedBy": "eksforge",
        }
        base_tags.update(extra or {})
        return base_tags


def get_config() -> Config:
    """Get a configuration instance bound to the process environment"""
    return Config()

"""HTTP trigger source for snapsync."""

from .app import SYNC_JOB_KEY, create_app, serve, verify_bearer_token

__all__ = ["SYNC_JOB_KEY", "create_app", "serve", "verify_bearer_token"]

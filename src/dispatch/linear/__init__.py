"""Linear integration: activity delivery over the GraphQL API."""

from src.dispatch.linear.client import (
    LinearAPIError,
    LinearActivityClient,
    create_linear_client,
)

__all__ = ["LinearAPIError", "LinearActivityClient", "create_linear_client"]

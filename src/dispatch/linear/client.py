"""Linear API client for agent session activities.

Posts agent activities (thoughts, actions, responses, errors) to a session
through the Linear GraphQL `agentActivityCreate` mutation, implementing the
ActivitySink interface the session coordinator reports through.

Requests are not retried: activity delivery is best-effort and a failed
delivery surfaces as LinearAPIError for the caller to log.
"""

import logging
from typing import Any, Dict, Optional

import httpx

from src.dispatch.activities.sink import ActivitySink


logger = logging.getLogger(__name__)


CREATE_AGENT_ACTIVITY_MUTATION = """
mutation CreateAgentActivity($input: AgentActivityCreateInput!) {
  agentActivityCreate(input: $input) {
    success
    agentActivity {
      id
    }
  }
}
"""


class LinearAPIError(Exception):
    """Raised when a Linear API request fails.

    Attributes:
        message: Human-readable error description.
        status_code: HTTP status code from the response, if one was received.
        response_body: Response body from the Linear API.
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response_body: Optional[str] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.response_body = response_body
        super().__init__(message)


class LinearActivityClient(ActivitySink):
    """Async Linear client that delivers agent activities.

    Attributes:
        access_token: OAuth or API token used as a bearer token.
        api_url: GraphQL endpoint.
        timeout: Request timeout in seconds.

    Example:
        >>> client = LinearActivityClient(access_token="lin_oauth_xxx")
        >>> async with client:
        ...     await client.send_thought("session-1", "On it")
    """

    def __init__(
        self,
        access_token: str,
        api_url: str = "https://api.linear.app/graphql",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the client.

        Args:
            access_token: Token for the Authorization header.
            api_url: GraphQL endpoint URL.
            timeout: Request timeout in seconds.
            transport: Optional httpx transport, e.g. httpx.MockTransport.
        """
        self.access_token = access_token
        self.api_url = api_url
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        """Get the HTTP client, creating it if necessary."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                headers=self._default_headers(),
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    def _default_headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
            "User-Agent": "Dispatch-Agent/1.0",
        }

    async def close(self) -> None:
        """Close the HTTP client and release resources."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "LinearActivityClient":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    async def send_thought(self, session_id: str, body: str) -> None:
        await self.create_activity(session_id, {"type": "thought", "body": body})

    async def send_ephemeral_thought(self, session_id: str, body: str) -> None:
        await self.create_activity(
            session_id, {"type": "thought", "body": body}, ephemeral=True
        )

    async def send_action(self, session_id: str, label: str, detail: str) -> None:
        await self.create_activity(
            session_id, {"type": "action", "action": label, "parameter": detail}
        )

    async def send_response(self, session_id: str, body: str) -> None:
        await self.create_activity(session_id, {"type": "response", "body": body})

    async def send_error(self, session_id: str, body: str) -> None:
        await self.create_activity(session_id, {"type": "error", "body": body})

    async def create_activity(
        self,
        session_id: str,
        content: Dict[str, Any],
        ephemeral: bool = False,
    ) -> str:
        """Create an agent activity in a session.

        Args:
            session_id: Agent session to post to.
            content: Activity content, e.g. {"type": "thought", "body": "..."}.
            ephemeral: Replace this activity when the next one arrives.

        Returns:
            The id of the created activity, or an empty string if the API did
            not return one.

        Raises:
            LinearAPIError: On transport failure, a non-2xx status, GraphQL
                            errors, or an unsuccessful mutation.
        """
        activity_input: Dict[str, Any] = {
            "agentSessionId": session_id,
            "content": content,
        }
        if ephemeral:
            activity_input["ephemeral"] = True

        data = await self._graphql(
            CREATE_AGENT_ACTIVITY_MUTATION, {"input": activity_input}
        )

        result = data.get("agentActivityCreate") or {}
        if not result.get("success"):
            raise LinearAPIError(
                f"agentActivityCreate was not successful for session {session_id}"
            )

        logger.debug(
            "Created %s activity",
            content.get("type"),
            extra={"session_id": session_id, "ephemeral": ephemeral},
        )
        return (result.get("agentActivity") or {}).get("id", "")

    async def _graphql(self, query: str, variables: Dict[str, Any]) -> Dict[str, Any]:
        """Execute a GraphQL request and return its data object."""
        try:
            response = await self.client.post(
                self.api_url, json={"query": query, "variables": variables}
            )
        except httpx.HTTPError as e:
            raise LinearAPIError(f"Request to Linear failed: {e}") from e

        if response.status_code >= 400:
            raise LinearAPIError(
                f"Linear API error: {response.status_code}",
                status_code=response.status_code,
                response_body=response.text,
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise LinearAPIError(
                "Linear API returned invalid JSON",
                status_code=response.status_code,
                response_body=response.text,
            ) from e

        if not isinstance(payload, dict):
            raise LinearAPIError(
                "Linear API returned an unexpected payload",
                status_code=response.status_code,
                response_body=response.text,
            )

        errors = payload.get("errors")
        if errors:
            messages = "; ".join(
                str(error.get("message", error)) if isinstance(error, dict) else str(error)
                for error in errors
            )
            raise LinearAPIError(
                f"Linear GraphQL error: {messages}",
                status_code=response.status_code,
                response_body=response.text,
            )

        return payload.get("data") or {}


def create_linear_client(
    access_token: str, api_url: str = "https://api.linear.app/graphql"
) -> LinearActivityClient:
    """Factory function to create a LinearActivityClient."""
    return LinearActivityClient(access_token=access_token, api_url=api_url)

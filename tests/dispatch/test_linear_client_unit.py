"""Unit tests for the Linear activity client, using httpx.MockTransport."""
import json

import httpx
import pytest

from src.dispatch.linear import LinearActivityClient, LinearAPIError, create_linear_client
from tests.dispatch.fakes import run_async

API_URL = "https://linear.test/graphql"


def ok_response(activity_id="activity-1"):
    return httpx.Response(
        200,
        json={
            "data": {
                "agentActivityCreate": {
                    "success": True,
                    "agentActivity": {"id": activity_id},
                }
            }
        },
    )


class RecordingTransport:
    """Collects requests and answers each with a fixed response."""

    def __init__(self, response=None, error=None):
        self.requests = []
        self.response = response or ok_response()
        self.error = error

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return self.response

    @property
    def inputs(self):
        return [json.loads(r.content)["variables"]["input"] for r in self.requests]


def make_client(handler):
    return LinearActivityClient(
        access_token="lin_test", api_url=API_URL, transport=httpx.MockTransport(handler)
    )


async def send_and_close(client, method, *args):
    async with client:
        return await getattr(client, method)(*args)


class TestActivityContent:

    @pytest.mark.parametrize(
        "method,args,content",
        [
            ("send_thought", ("On it",), {"type": "thought", "body": "On it"}),
            ("send_response", ("Fixed",), {"type": "response", "body": "Fixed"}),
            ("send_error", ("Broke",), {"type": "error", "body": "Broke"}),
            (
                "send_action",
                ("Editing", "src/app.py"),
                {"type": "action", "action": "Editing", "parameter": "src/app.py"},
            ),
        ],
    )
    def test_persistent_activities(self, method, args, content):
        transport = RecordingTransport()

        run_async(send_and_close(make_client(transport), method, "session-1", *args))

        assert transport.inputs == [{"agentSessionId": "session-1", "content": content}]

    def test_ephemeral_thought(self):
        transport = RecordingTransport()

        run_async(
            send_and_close(
                make_client(transport), "send_ephemeral_thought", "session-1", "Exploring"
            )
        )

        assert transport.inputs == [
            {
                "agentSessionId": "session-1",
                "content": {"type": "thought", "body": "Exploring"},
                "ephemeral": True,
            }
        ]

    def test_request_headers_and_endpoint(self):
        transport = RecordingTransport()

        run_async(send_and_close(make_client(transport), "send_thought", "s1", "hi"))

        request = transport.requests[0]
        assert str(request.url) == API_URL
        assert request.method == "POST"
        assert request.headers["Authorization"] == "Bearer lin_test"
        assert "agentActivityCreate" in json.loads(request.content)["query"]

    def test_create_activity_returns_id(self):
        transport = RecordingTransport(ok_response("act-9"))

        activity_id = run_async(
            send_and_close(
                make_client(transport),
                "create_activity",
                "s1",
                {"type": "thought", "body": "x"},
            )
        )

        assert activity_id == "act-9"


class TestErrors:

    def _send(self, transport):
        run_async(send_and_close(make_client(transport), "send_thought", "s1", "hi"))

    def test_http_error_status(self):
        transport = RecordingTransport(httpx.Response(401, text="unauthorized"))

        with pytest.raises(LinearAPIError) as exc_info:
            self._send(transport)

        assert exc_info.value.status_code == 401
        assert exc_info.value.response_body == "unauthorized"

    def test_graphql_errors(self):
        transport = RecordingTransport(
            httpx.Response(200, json={"errors": [{"message": "Entity not found"}]})
        )

        with pytest.raises(LinearAPIError, match="Entity not found"):
            self._send(transport)

    def test_unsuccessful_mutation(self):
        transport = RecordingTransport(
            httpx.Response(200, json={"data": {"agentActivityCreate": {"success": False}}})
        )

        with pytest.raises(LinearAPIError, match="not successful"):
            self._send(transport)

    def test_invalid_json(self):
        transport = RecordingTransport(httpx.Response(200, text="<html>"))

        with pytest.raises(LinearAPIError, match="invalid JSON"):
            self._send(transport)

    def test_transport_failure(self):
        transport = RecordingTransport(error=httpx.ConnectError("connection refused"))

        with pytest.raises(LinearAPIError, match="Request to Linear failed"):
            self._send(transport)


class TestLifecycle:

    def test_client_recreated_after_close(self):
        client = make_client(RecordingTransport())

        async def scenario():
            first = client.client
            await client.close()
            second = client.client
            await client.close()
            return first, second

        first, second = run_async(scenario())

        assert first is not second

    def test_factory(self):
        client = create_linear_client("lin_x", api_url=API_URL)

        assert client.access_token == "lin_x"
        assert client.api_url == API_URL

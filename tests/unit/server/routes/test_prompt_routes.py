"""Tests for prompt answer routes and the prompt stream."""
import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from agent_sandbox.core.types import ToolCallRecord
from agent_sandbox.server.database import MessageRepository
from agent_sandbox.server.routes.prompts import resume_point


def _prompt_call(prompt_id: str = "p1", tool_call_id: str = "tc-1", **extra) -> ToolCallRecord:
    return ToolCallRecord(
        id=tool_call_id,
        type="prompt",
        name="AskUserQuestion",
        input={"prompt_id": prompt_id, "question": "Which database?", **extra},
    )


@pytest.fixture
async def prompt_task(seed, make_target, make_task, db, make_message):
    await seed(make_target(), make_task())
    return await MessageRepository(db).create(
        make_message(content="Need input", tool_calls=[_prompt_call()])
    )


class TestAnswerPrompt:
    """POST /api/tasks/{id}/prompts/{prompt_id}/answer."""

    async def test_answer_stores_user_message(self, client, db, prompt_task, user_headers):
        response = await client.post(
            "/api/tasks/task-1/prompts/p1/answer",
            json={"tool_call_id": "tc-1", "answer": "postgres"},
            headers=user_headers,
        )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        messages = await MessageRepository(db).list_for_task("task-1")
        answer = messages[-1]
        assert answer.id == body["message_id"]
        assert answer.role == "user"
        assert answer.content == "postgres"
        assert answer.tool_calls[0].type == "prompt_answer"
        assert answer.tool_calls[0].input == {"prompt_id": "p1", "tool_call_id": "tc-1", "answer": "postgres"}

    async def test_second_answer_is_409(self, client, prompt_task, user_headers):
        await client.post(
            "/api/tasks/task-1/prompts/p1/answer",
            json={"tool_call_id": "tc-1", "answer": "postgres"},
            headers=user_headers,
        )

        response = await client.post(
            "/api/tasks/task-1/prompts/p1/answer",
            json={"tool_call_id": "tc-1", "answer": "mysql"},
            headers=user_headers,
        )

        assert response.status_code == 409
        assert response.json()["code"] == "ALREADY_ANSWERED"

    async def test_concurrent_answers_exactly_one_wins(self, client, prompt_task, user_headers):
        responses = await asyncio.gather(
            *(
                client.post(
                    "/api/tasks/task-1/prompts/p1/answer",
                    json={"tool_call_id": "tc-1", "answer": f"answer {i}"},
                    headers=user_headers,
                )
                for i in range(3)
            )
        )

        assert sorted(r.status_code for r in responses) == [200, 409, 409]

    async def test_unknown_prompt_is_404(self, client, prompt_task, user_headers):
        response = await client.post(
            "/api/tasks/task-1/prompts/p9/answer",
            json={"tool_call_id": "tc-1", "answer": "x"},
            headers=user_headers,
        )

        assert response.status_code == 404
        assert response.json()["code"] == "PROMPT_NOT_FOUND"

    async def test_wrong_tool_call_is_404(self, client, prompt_task, user_headers):
        response = await client.post(
            "/api/tasks/task-1/prompts/p1/answer",
            json={"tool_call_id": "tc-9", "answer": "x"},
            headers=user_headers,
        )

        assert response.status_code == 404

    async def test_expired_prompt_is_409(self, client, db, seed, make_target, make_task, make_message, user_headers):
        await seed(make_target(), make_task())
        expired = (datetime.now(UTC) - timedelta(minutes=1)).isoformat()
        await MessageRepository(db).create(
            make_message(tool_calls=[_prompt_call(expires_at=expired)])
        )

        response = await client.post(
            "/api/tasks/task-1/prompts/p1/answer",
            json={"tool_call_id": "tc-1", "answer": "x"},
            headers=user_headers,
        )

        assert response.status_code == 409
        assert response.json()["code"] == "PROMPT_EXPIRED"

    async def test_answer_length_is_limited(self, client, prompt_task, user_headers):
        response = await client.post(
            "/api/tasks/task-1/prompts/p1/answer",
            json={"tool_call_id": "tc-1", "answer": "x" * 4097},
            headers=user_headers,
        )

        assert response.status_code == 422


class TestResumePoint:
    @pytest.mark.parametrize(
        ("after", "last_event_id", "expected"),
        [
            (None, None, 0),
            ("5", None, 5),
            (None, "7", 7),
            ("5", "7", 5),
            ("abc", "7", 7),
            ("-1", None, 0),
        ],
    )
    def test_resume_point(self, after, last_event_id, expected):
        assert resume_point(after, last_event_id) == expected

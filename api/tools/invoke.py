"""Agent tool invocation endpoint for Vercel.

POST body: {"tool": "<name>", "input": {...}, "user": {"id": "...", "email": "..."}}
"""

from http.server import BaseHTTPRequestHandler
import asyncio
import json

from langchain_core.tools import ToolException
from pydantic import ValidationError as SchemaValidationError

from taskboard.services.agent_tools import ActingUser, tools_by_name
from taskboard.services.engine import TaskEngine
from taskboard.utils.errors import StoreError, TaskboardError
from taskboard.utils.logging import correlation_context, get_structured_logger, mask_user_id, setup_logging

setup_logging()
logger = get_structured_logger(__name__)


async def invoke_tool(body: dict, engine: TaskEngine) -> tuple[int, dict]:
    """Run one tool call and map the result to (status_code, payload)."""
    user = body.get("user") if isinstance(body, dict) else None
    if not isinstance(user, dict) or not user.get("id"):
        return 401, {"error": "Authentication required"}

    actor = ActingUser(id=str(user["id"]), email=user.get("email"))
    tools = tools_by_name(engine, actor)
    name = body.get("tool")
    tool = tools.get(name)
    if tool is None:
        return 400, {"error": f"Unknown tool: {name}", "available_tools": sorted(tools)}

    tool_input = body.get("input") or {}
    try:
        result = await tool.ainvoke(tool_input)
    except ToolException as e:
        cause = e.__cause__
        if isinstance(cause, StoreError):
            logger.error("Tool failed on the record store", tool=name, error=str(cause))
            return 500, {"error": str(cause), "code": cause.code}
        return 400, {"error": str(e)}
    except SchemaValidationError as e:
        return 400, {"error": "Invalid tool input", "details": e.errors(include_url=False)}

    logger.info("Tool invoked", tool=name, actor=mask_user_id(actor.id))
    if isinstance(result, dict) and result.get("requires_confirmation"):
        return 409, result
    return 200, {"tool": name, "result": result}


async def _handle(body: dict) -> tuple[int, dict]:
    engine = await TaskEngine.from_supabase()
    try:
        return await invoke_tool(body, engine)
    finally:
        await engine.close()


class handler(BaseHTTPRequestHandler):
    """Vercel serverless function handler for agent tool calls."""

    def _respond(self, status: int, payload: dict) -> None:
        self.send_response(status)
        self.send_header('Content-Type', 'application/json')
        self.end_headers()
        self.wfile.write(json.dumps(payload, default=str).encode('utf-8'))

    def do_POST(self):
        """Handle POST request."""
        with correlation_context():
            content_length = int(self.headers.get('Content-Length', 0))
            raw_body = self.rfile.read(content_length).decode('utf-8') if content_length > 0 else ""

            try:
                body = json.loads(raw_body) if raw_body else {}
            except json.JSONDecodeError:
                self._respond(400, {"error": "invalid JSON body"})
                return

            try:
                status, payload = asyncio.run(_handle(body))
            except TaskboardError as e:
                logger.error("Tool invocation failed", error_code=e.code, error=str(e))
                self._respond(500, {"error": str(e), "code": e.code})
                return

            self._respond(status, payload)

import asyncio
import json
import logging
from typing import Any, Dict, Iterable, List, Tuple

from ..errors import (
    BackendError,
    OperationTimeoutError,
    ToolExecutionError,
    ToolValidationError,
    UnknownToolError,
)
from ..models import ToolInvocation, ToolResult
from .nango import ActionBackend

logger = logging.getLogger(__name__)


class ToolHandler:
    """One supported tool: its required-field contract and how it calls the backend."""

    name: str = ""
    required_fields: Tuple[str, ...] = ()
    object_fields: Tuple[str, ...] = ()

    def validate(self, args: Dict[str, Any]) -> None:
        """Reject missing or malformed arguments before any backend call.

        Raises:
            ToolValidationError: Naming every missing field, or the first
                field that must be an object but is not.
        """
        missing = [name for name in self.required_fields if args.get(name) in (None, "")]
        if len(missing) == 1:
            raise ToolValidationError(
                f"Missing required field: {missing[0]} for {self.name}", tool_name=self.name
            )
        if missing:
            listed = ", ".join(missing[:-1]) + f" and {missing[-1]}"
            raise ToolValidationError(
                f"Missing required fields: {listed} for {self.name}", tool_name=self.name
            )
        for name in self.object_fields:
            if not isinstance(args.get(name), dict):
                raise ToolValidationError(
                    f"Missing or invalid fields for {self.name}", tool_name=self.name
                )

    async def run(self, backend: ActionBackend, args: Dict[str, Any]) -> Any:
        raise NotImplementedError


class CreateEntityHandler(ToolHandler):
    name = "create_entity"
    required_fields = ("operation", "entityType", "fields")
    object_fields = ("fields",)

    async def run(self, backend: ActionBackend, args: Dict[str, Any]) -> Any:
        return await backend.execute(args["operation"], args["entityType"], args["fields"])


class UpdateEntityHandler(ToolHandler):
    name = "update_entity"
    required_fields = ("operation", "entityType", "identifier", "fields")
    object_fields = ("fields",)

    async def run(self, backend: ActionBackend, args: Dict[str, Any]) -> Any:
        return await backend.execute(
            args["operation"], args["entityType"], args["identifier"], args["fields"]
        )


class FetchEntityHandler(ToolHandler):
    name = "fetch_entity"
    required_fields = ("operation", "entityType", "identifier")

    async def run(self, backend: ActionBackend, args: Dict[str, Any]) -> Any:
        # An empty list means no field filter.
        return await backend.execute(
            args["operation"], args["entityType"], args["identifier"], args.get("fields") or []
        )


class FixedEntityHandler(ToolHandler):
    """Legacy alias bound to one operation on one entity type (e.g. salesforce.createContact)."""

    def __init__(self, name: str, operation: str, entity_type: str) -> None:
        self.name = name
        self.operation = operation
        self.entity_type = entity_type
        if operation == "create":
            self.required_fields, self.object_fields = ("fields",), ("fields",)
        elif operation == "update":
            self.required_fields, self.object_fields = ("identifier", "fields"), ("fields",)
        else:
            self.required_fields, self.object_fields = ("identifier",), ()

    async def run(self, backend: ActionBackend, args: Dict[str, Any]) -> Any:
        if self.operation == "create":
            return await backend.execute(self.operation, self.entity_type, args["fields"])
        if self.operation == "update":
            return await backend.execute(
                self.operation, self.entity_type, args["identifier"], args["fields"]
            )
        return await backend.execute(
            self.operation, self.entity_type, args["identifier"], args.get("fields") or []
        )


def default_tool_handlers() -> List[ToolHandler]:
    return [
        CreateEntityHandler(),
        UpdateEntityHandler(),
        FetchEntityHandler(),
        FixedEntityHandler("salesforce.createContact", "create", "Contact"),
        FixedEntityHandler("salesforce.updateContact", "update", "Contact"),
        FixedEntityHandler("salesforce.fetchContact", "fetch", "Contact"),
    ]


def parse_tool_arguments(tool_name: str, arguments: str | Dict[str, Any]) -> Dict[str, Any]:
    """Decode model-produced arguments; they must form a JSON object."""
    if isinstance(arguments, dict):
        return arguments
    try:
        parsed = json.loads(arguments) if arguments and arguments.strip() else {}
    except json.JSONDecodeError as e:
        raise ToolValidationError(
            f"Invalid JSON arguments for {tool_name}: {e.msg}", tool_name=tool_name
        ) from e
    if not isinstance(parsed, dict):
        raise ToolValidationError(
            f"Arguments for {tool_name} must be a JSON object", tool_name=tool_name
        )
    return parsed


class ToolDispatcher:
    """Validates and executes single tool calls against the action backend.

    In-flight calls are tracked per call id, so several calls of one session
    can be inspected at once.
    """

    def __init__(
        self,
        backend: ActionBackend,
        handlers: Iterable[ToolHandler] | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        self._backend = backend
        self._timeout = timeout_seconds
        self._registry: Dict[str, ToolHandler] = {}
        self._active: Dict[str, ToolInvocation] = {}
        for handler in handlers if handlers is not None else default_tool_handlers():
            self.register(handler)

    def register(self, handler: ToolHandler) -> None:
        self._registry[handler.name] = handler

    @property
    def tool_names(self) -> List[str]:
        return list(self._registry)

    def active_tools(self, session_id: str | None = None) -> Dict[str, ToolInvocation]:
        """Snapshot of in-flight calls keyed by call id, optionally for one session."""
        return {
            call_id: invocation
            for call_id, invocation in self._active.items()
            if session_id is None or invocation.session_id == session_id
        }

    async def _call_backend(self, handler: ToolHandler, args: Dict[str, Any]) -> Any:
        try:
            if self._timeout:
                return await asyncio.wait_for(handler.run(self._backend, args), self._timeout)
            return await handler.run(self._backend, args)
        except asyncio.TimeoutError as e:
            raise OperationTimeoutError(f"Tool {handler.name}", self._timeout or 0) from e
        except ToolExecutionError:
            raise
        except Exception as e:
            # Anything the backend raises is a backend failure of this call only.
            raise BackendError(str(e) or type(e).__name__, tool_name=handler.name) from e

    async def execute_tool(self, invocation: ToolInvocation) -> ToolResult:
        """Execute one tool call and wrap the outcome as a ToolResult.

        Never raises for per-call failures: validation, unknown tool, backend
        and timeout errors all come back as ``status == "error"``.
        """
        call_id = invocation.call_id
        self._active[call_id] = invocation
        logger.info(
            "Executing tool %s call_id=%s session_id=%s",
            invocation.name,
            call_id,
            invocation.session_id,
        )
        try:
            handler = self._registry.get(invocation.name)
            if handler is None:
                raise UnknownToolError(invocation.name)
            args = parse_tool_arguments(invocation.name, invocation.arguments)
            handler.validate(args)
            data = await self._call_backend(handler, args)
        except (ToolValidationError, UnknownToolError) as e:
            logger.warning("Tool %s rejected: %s", invocation.name, e)
            return ToolResult.failure(str(e), tool_call_id=call_id)
        except (BackendError, OperationTimeoutError) as e:
            logger.error("Tool execution failed tool=%s call_id=%s: %s", invocation.name, call_id, e)
            return ToolResult.failure(str(e), tool_call_id=call_id)
        finally:
            self._active.pop(call_id, None)

        logger.info("Tool %s completed call_id=%s", invocation.name, call_id)
        return ToolResult.success(data, tool_call_id=call_id)

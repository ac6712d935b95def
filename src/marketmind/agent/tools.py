import asyncio
import inspect
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Sequence, Type

from jsonschema import Draft7Validator
from jsonschema.exceptions import SchemaError
from pydantic import BaseModel, ValidationError

from ..errors import ToolExecutionError

logger = logging.getLogger(__name__)

ToolHandler = Callable[[Any], Awaitable[Any] | Any]

EMPTY_SCHEMA: Dict[str, Any] = {"type": "object", "properties": {}, "required": []}


@dataclass
class Tool:
    """A callable data tool as advertised to the language model."""

    name: str
    description: str
    input_schema: Dict[str, Any]
    handler: ToolHandler
    args_model: Type[BaseModel] | None = None

    def to_openai(self) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.input_schema,
            },
        }


@dataclass
class ToolOutcome:
    """Result or structured error of one tool call."""

    name: str
    call_id: str = ""
    arguments: Any = None
    result: Any = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def payload(self) -> Any:
        return self.result if self.ok else {"error": self.error}


class ToolRegistry:
    """Catalog of tools plus the single place where arguments are validated.

    Arguments arrive as the raw JSON blob produced by the model. They are
    checked against the tool's input schema, then decoded into the tool's
    pydantic model (when it has one) before the handler runs.
    """

    def __init__(self) -> None:
        self._tools: Dict[str, Tool] = {}
        self._validators: Dict[str, Draft7Validator] = {}

    def register(self, tool: Tool) -> None:
        try:
            Draft7Validator.check_schema(tool.input_schema)
        except SchemaError as e:
            raise ValueError(f"Invalid input schema for tool {tool.name}: {e.message}") from e
        if tool.name in self._tools:
            logger.warning("Replacing already registered tool %s", tool.name)
        self._tools[tool.name] = tool
        self._validators[tool.name] = Draft7Validator(tool.input_schema)

    def register_function(
        self,
        name: str,
        description: str,
        handler: ToolHandler,
        *,
        args_model: Type[BaseModel] | None = None,
        input_schema: Dict[str, Any] | None = None,
    ) -> Tool:
        if input_schema is None:
            input_schema = args_model.model_json_schema() if args_model else EMPTY_SCHEMA
        tool = Tool(
            name=name,
            description=description,
            input_schema=input_schema,
            handler=handler,
            args_model=args_model,
        )
        self.register(tool)
        return tool

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def names(self) -> List[str]:
        return list(self._tools)

    def catalog(self) -> List[Dict[str, Any]]:
        """Tool schemas in OpenAI function format."""
        return [tool.to_openai() for tool in self._tools.values()]

    def describe(self) -> List[Dict[str, Any]]:
        return [
            {"name": t.name, "description": t.description, "input_schema": t.input_schema}
            for t in self._tools.values()
        ]

    def decode_arguments(self, name: str, args_blob: str | Mapping[str, Any] | None) -> Any:
        """Validate raw arguments for `name` and decode them into a typed value."""
        tool = self._tools.get(name)
        if tool is None:
            raise ToolExecutionError(name, f"Tool {name} not found")

        if args_blob is None or args_blob == "":
            arguments: Any = {}
        elif isinstance(args_blob, str):
            try:
                arguments = json.loads(args_blob)
            except json.JSONDecodeError as e:
                raise ToolExecutionError(name, f"invalid arguments - {e}") from e
        else:
            arguments = dict(args_blob)

        errors = sorted(self._validators[name].iter_errors(arguments), key=str)
        if errors:
            first = errors[0]
            location = ".".join(str(p) for p in first.absolute_path) or "arguments"
            raise ToolExecutionError(name, f"invalid arguments - {location}: {first.message}")

        if tool.args_model is None:
            return arguments
        try:
            return tool.args_model.model_validate(arguments)
        except ValidationError as e:
            raise ToolExecutionError(name, f"invalid arguments - {e.errors()[0]['msg']}") from e

    async def execute(
        self, name: str, args_blob: str | Mapping[str, Any] | None, call_id: str = ""
    ) -> ToolOutcome:
        """Run one tool. Failures come back as an outcome with `error` set."""
        outcome = ToolOutcome(name=name, call_id=call_id)
        try:
            arguments = self.decode_arguments(name, args_blob)
            outcome.arguments = (
                arguments.model_dump() if isinstance(arguments, BaseModel) else arguments
            )
            logger.info("Executing tool: %s", name)
            result = self._tools[name].handler(arguments)
            if inspect.isawaitable(result):
                result = await result
            outcome.result = result
        except ToolExecutionError as e:
            logger.warning("Tool %s failed: %s", name, e.message)
            outcome.error = e.message
        except (OSError, ConnectionError, TimeoutError, ValueError, KeyError, RuntimeError) as e:
            logger.error("Error executing tool %s: %s", name, e)
            outcome.error = str(e) or e.__class__.__name__
        except Exception as e:
            logger.exception("Unexpected failure in tool %s", name)
            outcome.error = f"{e.__class__.__name__}: {e}" if str(e) else e.__class__.__name__
        return outcome

    async def execute_many(
        self, calls: Sequence[tuple[str, str | Mapping[str, Any] | None, str]]
    ) -> List[ToolOutcome]:
        """Run calls concurrently and return once every call has finished."""
        return list(
            await asyncio.gather(
                *(self.execute(name, args, call_id) for name, args, call_id in calls)
            )
        )

import inspect
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Protocol

from pydantic import BaseModel, Field

from fanout import instrumentation as inst
from fanout.abort import AbortSignal
from fanout.errors import AbortedError, ToolExecutionError

logger = logging.getLogger(__name__)

# Parameters the runtime injects itself; never shown to the model.
INJECTED_PARAMS = ("context",)

_JSON_TYPES = {
    str: "string",
    int: "integer",
    float: "number",
    bool: "boolean",
    list: "array",
    tuple: "array",
    set: "array",
    dict: "object",
    type(None): "null",
}


@dataclass
class ToolContext:
    """Runtime context injected into tools that declare a ``context`` parameter.

    Args:
        call_id: Id of the tool call being executed.
        abort: Abort signal of the turn that requested the call.
    """

    call_id: str
    abort: AbortSignal | None = None


@dataclass
class ToolResult:
    """What a tool call sends back to the conversation."""

    content: str
    is_error: bool = False


class ToolExecutor(Protocol):
    """Boundary between a Conversation Turn and whatever runs tools."""

    async def __call__(
        self, name: str, arguments_json: str, call_id: str,
        abort: AbortSignal | None = None,
    ) -> ToolResult: ...


class ToolCallResult(BaseModel):
    tool_name: str
    output: Any


def _json_type(annotation: Any) -> str:
    if isinstance(annotation, str):
        by_name = {t.__name__: js for t, js in _JSON_TYPES.items()}
        return by_name.get(annotation.split("[")[0], "string")
    origin = getattr(annotation, "__origin__", None)
    return _JSON_TYPES.get(origin or annotation, "string")


def _parse_param_descriptions(func: Callable) -> dict[str, str]:
    """Read parameter descriptions from a Google, reST or NumPy docstring."""
    doc = inspect.getdoc(func)
    if not doc:
        return {}

    descs: dict[str, str] = {}
    lines = doc.splitlines()

    # reST / Sphinx
    for line in lines:
        m = re.match(r"\s*:param\s+(?:\S+\s+)?(\w+):\s*(.*)", line)
        if m:
            descs[m.group(1)] = m.group(2).strip()
    if descs:
        return descs

    # Google
    in_args = False
    current = None
    base_indent = None
    for line in lines:
        if re.match(r"^(Args|Arguments|Parameters):\s*$", line):
            in_args = True
            current = None
            base_indent = None
            continue
        if not in_args:
            continue
        if not line.strip():
            continue
        indent = len(line) - len(line.lstrip())
        if indent == 0:
            break
        if base_indent is None:
            base_indent = indent
        m = re.match(r"\s*(\w+)(?:\s*\([^)]*\))?:\s*(.*)", line)
        if indent == base_indent and m:
            current = m.group(1)
            descs[current] = m.group(2).strip()
        elif current is not None:
            descs[current] += "\n" + line.strip()
    if descs:
        return descs

    # NumPy
    for i, line in enumerate(lines):
        if line.strip() == "Parameters" and i + 1 < len(lines) and set(lines[i + 1].strip()) == {"-"}:
            current = None
            body_lines = lines[i + 2:]
            for j, body in enumerate(body_lines):
                if not body.strip():
                    continue
                if not body.startswith(" "):
                    m = re.match(r"(\w+)\s*(?::.*)?$", body.strip())
                    next_line = body_lines[j + 1].strip() if j + 1 < len(body_lines) else ""
                    if m is None or (next_line and set(next_line) == {"-"}):
                        break
                    current = m.group(1)
                    descs[current] = ""
                elif current is not None:
                    sep = "\n" if descs[current] else ""
                    descs[current] += sep + body.strip()
            break
    return descs


def _build_parameters_schema(func: Callable) -> tuple[dict, list[str]]:
    """Build a JSON-schema ``object`` for *func* and its required params."""
    descs = _parse_param_descriptions(func)
    properties: dict[str, dict] = {}
    required: list[str] = []
    for name, param in inspect.signature(func).parameters.items():
        if name in INJECTED_PARAMS:
            continue
        properties[name] = {
            "type": _json_type(param.annotation),
            "description": descs.get(name, ""),
        }
        if param.default is inspect.Parameter.empty:
            required.append(name)
    schema = {"type": "object", "properties": properties, "required": required}
    return schema, required


class Tool(BaseModel):
    func: Callable = Field(exclude=True)
    name: str
    description: str = ""
    parameters_schema: dict
    bound_args: dict = Field(default_factory=dict, exclude=True)
    model_config = {"arbitrary_types_allowed": True}

    def model_dump(self, **kwargs):
        """Return the OpenAI-compatible function schema."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters_schema,
            },
        }

    def model_dump_json(self, **kwargs):
        return json.dumps(self.model_dump())

    def bind(self, **kwargs) -> "Tool":
        """Pre-fill arguments and hide them from the model."""
        properties = {
            k: v for k, v in self.parameters_schema["properties"].items()
            if k not in kwargs
        }
        required = [r for r in self.parameters_schema["required"] if r not in kwargs]
        return Tool(
            func=self.func,
            name=self.name,
            description=self.description,
            parameters_schema={**self.parameters_schema, "properties": properties, "required": required},
            bound_args={**self.bound_args, **kwargs},
        )

    @property
    def wants_context(self) -> bool:
        return "context" in inspect.signature(self.func).parameters

    async def __call__(self, *args, **kwargs) -> ToolCallResult:
        output = self.func(*args, **{**self.bound_args, **kwargs})
        if inspect.isawaitable(output):
            output = await output
        return ToolCallResult(tool_name=self.name, output=output)


def tool(func: Callable | None = None, *, name: str | None = None, description: str | None = None):
    """Turn a plain or async function into a :class:`Tool`.

    Usable bare (``@tool``) or with overrides
    (``@tool(name="x", description="y")``).
    """

    def wrap(f: Callable) -> Tool:
        schema, _ = _build_parameters_schema(f)
        return Tool(
            func=f,
            name=name or f.__name__,
            description=description if description is not None else (inspect.getdoc(f) or ""),
            parameters_schema=schema,
        )

    if func is not None:
        return wrap(func)
    return wrap


class ToolRegistry:
    """Executes tool calls by name. Implements :class:`ToolExecutor`.

    Every failure is turned into an error :class:`ToolResult` so the model
    can react to it; only an abort propagates.
    """

    def __init__(self, tools: list[Tool] | None = None):
        self._tools: dict[str, Tool] = {}
        for t in tools or []:
            self.register(t)

    def register(self, t: Tool) -> None:
        if t.name in self._tools:
            raise ValueError(f"Duplicate tool name: '{t.name}'")
        self._tools[t.name] = t

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def schemas(self) -> list[dict]:
        return [t.model_dump() for t in self._tools.values()]

    async def __call__(
        self, name: str, arguments_json: str, call_id: str,
        abort: AbortSignal | None = None,
    ) -> ToolResult:
        async with inst.tool_span(name, call_id) as span:
            result = await self._execute(name, arguments_json, call_id, abort)
            if result.is_error:
                inst.record_error(span, ToolExecutionError(result.content))
            return result

    async def _execute(self, name, arguments_json, call_id, abort) -> ToolResult:
        tool_obj = self._tools.get(name)
        if tool_obj is None:
            logger.warning(f"Tool not found: {name}")
            return ToolResult(content=f"Error: tool '{name}' not found", is_error=True)

        try:
            params = json.loads(arguments_json or "{}")
        except json.JSONDecodeError as e:
            logger.warning(f"Invalid JSON in arguments for {name}: {e}")
            return ToolResult(content=f"Error: invalid arguments: {e}", is_error=True)
        if not isinstance(params, dict):
            return ToolResult(content="Error: arguments must be a JSON object", is_error=True)

        logger.info(f"Calling {name} with {params}")
        if tool_obj.wants_context:
            params["context"] = ToolContext(call_id=call_id, abort=abort)

        try:
            result = await tool_obj(**params)
        except AbortedError:
            raise
        except ToolExecutionError as e:
            logger.info(f"Tool {name} reported an error: {e}")
            return ToolResult(content=str(e), is_error=True)
        except Exception as e:
            logger.error(f"Tool {name} raised: {e}")
            return ToolResult(content=f"Error calling {name}: {e}", is_error=True)

        output = result.output
        content = output if isinstance(output, str) else json.dumps(output)
        return ToolResult(content=content)

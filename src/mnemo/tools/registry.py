"""Tool registry built on Pydantic v2 models."""

from __future__ import annotations

import json
from collections.abc import Awaitable, Callable
from time import perf_counter
from typing import Any

from fastapi.encoders import jsonable_encoder
from langchain_core.tools import StructuredTool
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from mnemo.errors import MnemoError
from mnemo.types import ToolTrace

ToolHandler = Callable[[Any], Awaitable[dict[str, Any]]]


class ToolSpec(BaseModel):
    """Declarative tool specification for registration and validation."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str
    description: str
    args_schema: type[BaseModel]
    handler: ToolHandler
    tags: list[str] = Field(default_factory=list)

    async def invoke(self, payload: dict[str, Any]) -> dict[str, Any]:
        data = self.args_schema.model_validate(payload)
        return await self.handler(data)


class ToolRegistry:
    """Stores tool specs and exports LangChain-compatible tool objects."""

    def __init__(self) -> None:
        self._tools: dict[str, ToolSpec] = {}
        self._observer: Callable[[ToolTrace], None] | None = None

    def register(self, spec: ToolSpec) -> None:
        if spec.name in self._tools:
            raise ValueError(f"Tool already registered: {spec.name}")
        self._tools[spec.name] = spec

    def set_observer(self, observer: Callable[[ToolTrace], None] | None) -> None:
        """Set an optional callback invoked after each tool execution."""
        self._observer = observer

    async def execute(self, name: str, payload: dict[str, Any]) -> dict[str, Any]:
        spec = self._tools.get(name)
        if spec is None:
            raise KeyError(f"Unknown tool: {name}")
        return await self._execute_spec(spec, payload)

    def as_langchain_tools(self) -> list[StructuredTool]:
        return [
            StructuredTool.from_function(
                name=spec.name,
                description=spec.description,
                args_schema=spec.args_schema,
                coroutine=self._build_coroutine(spec),
            )
            for spec in self._tools.values()
        ]

    def specs(self) -> list[ToolSpec]:
        return list(self._tools.values())

    def describe(self) -> list[dict[str, Any]]:
        return [
            {
                "name": spec.name,
                "description": spec.description,
                "tags": spec.tags,
                "input_schema": spec.args_schema.model_json_schema(),
            }
            for spec in self._tools.values()
        ]

    def _build_coroutine(self, spec: ToolSpec) -> Callable[..., Awaitable[str]]:
        async def _coroutine(**kwargs: Any) -> str:
            output = await self._execute_spec(spec, kwargs)
            return json.dumps(jsonable_encoder(output))

        return _coroutine

    async def _execute_spec(self, spec: ToolSpec, payload: dict[str, Any]) -> dict[str, Any]:
        start = perf_counter()
        try:
            output = await spec.invoke(payload)
        except MnemoError as exc:
            self._notify(spec, payload, exc.message, start, error_code=exc.code)
            raise
        except ValidationError as exc:
            self._notify(spec, payload, str(exc), start, error_code="VALIDATION_ERROR")
            raise
        except Exception as exc:
            self._notify(spec, payload, repr(exc), start, error_code="INTERNAL_ERROR")
            raise
        self._notify(spec, payload, json.dumps(jsonable_encoder(output)), start)
        return output

    def _notify(
        self,
        spec: ToolSpec,
        payload: dict[str, Any],
        preview: str,
        start: float,
        *,
        error_code: str | None = None,
    ) -> None:
        if self._observer is None:
            return
        self._observer(
            ToolTrace(
                name=spec.name,
                input_payload=payload,
                output_preview=preview[:320],
                latency_ms=(perf_counter() - start) * 1000.0,
                error_code=error_code,
            )
        )

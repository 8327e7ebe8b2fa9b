import json

import pytest
from pydantic import BaseModel, Field, ValidationError

from mnemo.tools.registry import ToolRegistry, ToolSpec


class EchoInput(BaseModel):
    value: int = Field(ge=1)


async def _echo(data: EchoInput) -> dict:
    return {"value": data.value}


def _spec() -> ToolSpec:
    return ToolSpec(
        name="echo",
        description="echo positive int",
        args_schema=EchoInput,
        handler=_echo,
        tags=["test"],
    )


@pytest.mark.asyncio
async def test_tool_registry_validation() -> None:
    registry = ToolRegistry()
    registry.register(_spec())

    assert await registry.execute("echo", {"value": 3}) == {"value": 3}

    with pytest.raises(ValidationError):
        await registry.execute("echo", {"value": 0})


def test_duplicate_tool_registration_rejected() -> None:
    registry = ToolRegistry()
    spec = _spec()

    registry.register(spec)
    with pytest.raises(ValueError):
        registry.register(spec)


@pytest.mark.asyncio
async def test_unknown_tool_raises_key_error() -> None:
    with pytest.raises(KeyError):
        await ToolRegistry().execute("missing", {})


@pytest.mark.asyncio
async def test_langchain_tools_return_json() -> None:
    registry = ToolRegistry()
    registry.register(_spec())

    (tool,) = registry.as_langchain_tools()
    output = await tool.ainvoke({"value": 7})

    assert tool.name == "echo"
    assert json.loads(output) == {"value": 7}


def test_describe_exposes_input_schema() -> None:
    registry = ToolRegistry()
    registry.register(_spec())

    (described,) = registry.describe()

    assert described["name"] == "echo"
    assert described["tags"] == ["test"]
    assert described["input_schema"]["properties"]["value"]["minimum"] == 1

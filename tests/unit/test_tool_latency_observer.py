import pytest
from pydantic import BaseModel, ValidationError

from mnemo.errors import CacheNotFoundError
from mnemo.tools.registry import ToolRegistry, ToolSpec


class AliasInput(BaseModel):
    alias: str


@pytest.mark.asyncio
async def test_tool_observer_captures_latency_and_payload() -> None:
    registry = ToolRegistry()

    async def _handler(data: AliasInput) -> dict:
        return {"alias": data.alias.upper()}

    registry.register(
        ToolSpec(
            name="shout",
            description="uppercase",
            args_schema=AliasInput,
            handler=_handler,
        )
    )

    observed = []
    registry.set_observer(observed.append)
    result = await registry.execute("shout", {"alias": "demo"})
    registry.set_observer(None)

    assert result == {"alias": "DEMO"}
    assert len(observed) == 1
    assert observed[0].name == "shout"
    assert observed[0].input_payload == {"alias": "demo"}
    assert observed[0].output_preview == '{"alias": "DEMO"}'
    assert observed[0].latency_ms >= 0.0
    assert observed[0].error_code is None


@pytest.mark.asyncio
async def test_tool_observer_records_error_codes() -> None:
    registry = ToolRegistry()

    async def _handler(data: AliasInput) -> dict:
        raise CacheNotFoundError(data.alias)

    registry.register(
        ToolSpec(name="lookup", description="always missing", args_schema=AliasInput, handler=_handler)
    )
    observed = []
    registry.set_observer(observed.append)

    with pytest.raises(CacheNotFoundError):
        await registry.execute("lookup", {"alias": "demo"})

    assert observed[0].error_code == "CACHE_NOT_FOUND"
    assert observed[0].output_preview == "Cache not found: demo"


@pytest.mark.asyncio
async def test_tool_observer_records_validation_and_unexpected_failures() -> None:
    registry = ToolRegistry()

    async def _handler(data: AliasInput) -> dict:
        raise RuntimeError("backend exploded")

    registry.register(
        ToolSpec(name="fragile", description="always fails", args_schema=AliasInput, handler=_handler)
    )
    observed = []
    registry.set_observer(observed.append)

    with pytest.raises(ValidationError):
        await registry.execute("fragile", {"alias": 42})
    with pytest.raises(RuntimeError):
        await registry.execute("fragile", {"alias": "demo"})

    assert [trace.error_code for trace in observed] == ["VALIDATION_ERROR", "INTERNAL_ERROR"]
    assert "alias" in observed[0].output_preview
    assert "backend exploded" in observed[1].output_preview

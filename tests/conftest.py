from __future__ import annotations

import pytest
from loguru import logger

from tether.agent.tools import ToolDescriptor
from tether.agent.tools.schema import object_schema, string_property


@pytest.fixture(autouse=True)
def _quiet_logs():
    """Keep loguru output out of test reports."""
    logger.remove()
    yield


@pytest.fixture
def calculator():
    """Calculator tool evaluating a simple arithmetic expression."""

    def _calc(expression: str) -> str:
        allowed = set("0123456789+-*/(). %")
        if not set(expression) <= allowed:
            raise ValueError(f"unsupported expression: {expression}")
        expr = expression.replace("%", "/100")
        return f"{eval(expr):g}"

    return ToolDescriptor(
        name="calculator",
        description="Evaluate an arithmetic expression",
        handler=_calc,
        parameters=object_schema({"expression": string_property("e.g. 0.15 * 250")}),
    )

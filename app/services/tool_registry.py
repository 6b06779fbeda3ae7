"""Catalog of invokable provider tools: discovery, pricing and input validation."""

import math
import re
from typing import Any, Literal

from pydantic import BaseModel, Field

from app.core.exceptions import BadRequestError, ConflictError
from app.core.logging import get_logger
from app.services.fal import DEFAULT_POLL, PollPolicy
from app.services.pricing import parse_duration_seconds, round_credits

log = get_logger(__name__)

TOOL_ID_RE = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9._-]{2,100}$")
DEFAULT_MARKUP = 1.30

ToolCategory = Literal[
    "image-generation",
    "image-editing",
    "image-processing",
    "video-generation",
    "video-editing",
    "audio-generation",
    "audio-processing",
    "music-generation",
    "3d-generation",
    "text-generation",
    "vision",
    "utility",
]


class ToolParameter(BaseModel):
    type: Literal["string", "number", "boolean", "array", "object"]
    description: str | None = None
    enum: list[Any] | None = None
    default: Any = None
    minimum: float | None = None
    maximum: float | None = None
    items: dict[str, Any] | None = None


class ToolSchema(BaseModel):
    type: Literal["object"] = "object"
    properties: dict[str, ToolParameter]
    required: list[str] = Field(default_factory=list)


class ToolPricing(BaseModel):
    base_usd_cost: float
    per_unit_cost: float | None = None
    unit_type: Literal["second", "minute", "image", "step"] | None = None
    credits: float
    per_unit_credits: float | None = None
    markup: float = DEFAULT_MARKUP


class ToolDefinition(BaseModel):
    id: str
    name: str
    description: str
    category: ToolCategory
    fal_model: str
    execution_mode: Literal["sync", "queue"]
    input_schema: ToolSchema
    output_description: str = ""
    output_mime_types: list[str] = Field(default_factory=list)
    pricing: ToolPricing
    enabled: bool = True
    tags: list[str] = Field(default_factory=list)
    version: str = "1.0.0"
    poll_interval: float = DEFAULT_POLL.interval
    poll_timeout: float = DEFAULT_POLL.timeout

    @property
    def poll(self) -> PollPolicy:
        return PollPolicy(interval=self.poll_interval, timeout=self.poll_timeout)

    def public(self) -> dict[str, Any]:
        return self.model_dump(exclude={"poll_interval", "poll_timeout"}, exclude_none=True)


class ToolPrice(BaseModel):
    usd: float
    credits: float
    usdc_units: str  # 6-decimal USDC base units, as a string for x402


_TYPE_CHECKS = {
    "string": lambda v: isinstance(v, str),
    "boolean": lambda v: isinstance(v, bool),
    "array": lambda v: isinstance(v, list),
    "object": lambda v: isinstance(v, dict),
}


def as_number(value: Any) -> float | None:
    """Numbers and numeric strings ("180") as a float; None for anything else."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


class ToolRegistry:
    def __init__(self, tools: list[ToolDefinition] | None = None) -> None:
        self._tools: dict[str, ToolDefinition] = {}
        for tool in tools or []:
            self._tools[tool.id] = tool

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, tool_id: str) -> bool:
        return tool_id in self._tools

    def get(self, tool_id: str) -> ToolDefinition | None:
        return self._tools.get(tool_id)

    def list_enabled(self) -> list[ToolDefinition]:
        return [t for t in self._tools.values() if t.enabled]

    def by_category(self, category: str) -> list[ToolDefinition]:
        return [t for t in self.list_enabled() if t.category == category]

    def by_tag(self, tag: str) -> list[ToolDefinition]:
        return [t for t in self.list_enabled() if tag in t.tags]

    def search(self, query: str) -> list[ToolDefinition]:
        q = query.lower().strip()
        if not q:
            return self.list_enabled()
        return [
            t
            for t in self.list_enabled()
            if q in t.name.lower()
            or q in t.description.lower()
            or q in t.id.lower()
            or any(q in tag for tag in t.tags)
        ]

    def categories(self) -> list[dict[str, Any]]:
        grouped: dict[str, list[str]] = {}
        for tool in self.list_enabled():
            grouped.setdefault(tool.category, []).append(tool.id)
        return [{"category": c, "count": len(ids), "tools": ids} for c, ids in grouped.items()]

    def calculate_price(
        self, tool_id: str, params: dict[str, Any] | None = None, markup: float | None = None
    ) -> ToolPrice | None:
        tool = self.get(tool_id)
        if not tool:
            return None
        params = params or {}
        pricing = tool.pricing
        usd = pricing.base_usd_cost
        credits = pricing.credits
        if pricing.per_unit_cost and pricing.unit_type:
            units = _units(pricing.unit_type, params)
            usd = pricing.per_unit_cost * units
            credits = (pricing.per_unit_credits or pricing.credits) * units
        marked_up = usd * (pricing.markup if markup is None else markup)
        return ToolPrice(
            usd=round(marked_up, 6),
            credits=round_credits(credits),
            usdc_units=str(round(marked_up * 1_000_000)),
        )

    def validate_input(self, tool_id: str, data: dict[str, Any]) -> tuple[bool, list[str]]:
        tool = self.get(tool_id)
        if not tool:
            return False, [f"Unknown tool: {tool_id}"]
        schema = tool.input_schema
        errors: list[str] = []
        for name in schema.required:
            if data.get(name) in (None, ""):
                errors.append(f"Missing required field: {name}")
        for key, value in data.items():
            param = schema.properties.get(key)
            if param is None or value is None:
                # unknown fields pass through to the provider
                continue
            number = None
            if param.type == "number":
                number = as_number(value)
                if number is None:
                    errors.append(f"Field '{key}' must be a number, got {type(value).__name__}")
                    continue
            elif not _TYPE_CHECKS[param.type](value):
                errors.append(f"Field '{key}' must be a {param.type}, got {type(value).__name__}")
                continue
            if param.enum is not None and (value if number is None else number) not in param.enum:
                allowed = ", ".join(str(e) for e in param.enum)
                errors.append(f"Field '{key}' must be one of: {allowed}. Got: {value}")
            if number is not None:
                if param.minimum is not None and number < param.minimum:
                    errors.append(f"Field '{key}' must be >= {param.minimum:g}, got {value}")
                if param.maximum is not None and number > param.maximum:
                    errors.append(f"Field '{key}' must be <= {param.maximum:g}, got {value}")
        return not errors, errors

    def tools_for_agent(self, tool_ids: list[str]) -> list[ToolDefinition]:
        return [t for t in (self._tools.get(i) for i in tool_ids) if t is not None and t.enabled]

    def validate_tool_ids(self, tool_ids: list[str]) -> tuple[bool, list[str]]:
        unknown = [i for i in tool_ids if i not in self._tools]
        return not unknown, unknown

    def register(self, tool: ToolDefinition, allow_override: bool = False) -> None:
        if not TOOL_ID_RE.match(tool.id):
            log.warning("tool_register_rejected", tool_id=tool.id, reason="invalid_id")
            raise BadRequestError(f"Invalid tool ID format: {tool.id}")
        if tool.id in self._tools and not allow_override:
            log.warning("tool_register_rejected", tool_id=tool.id, reason="exists")
            raise ConflictError(f"Tool already registered: {tool.id}")
        if not tool.name.strip() or not tool.description.strip() or not tool.fal_model.strip():
            raise BadRequestError("Tool registration requires name, description and fal_model")
        self._tools[tool.id] = tool
        log.info("tool_registered", tool_id=tool.id)

    def to_mcp_tools(self) -> list[dict[str, Any]]:
        return [
            {
                "name": t.id,
                "description": (
                    f"{t.name}: {t.description} [Category: {t.category}] "
                    f"[Cost: ${t.pricing.base_usd_cost} / {t.pricing.credits} credits]"
                ),
                "inputSchema": t.input_schema.model_dump(exclude_none=True),
            }
            for t in self.list_enabled()
        ]


def _positive(value: Any, default: float) -> float:
    number = as_number(value)
    return number if number is not None and number > 0 else default


def _units(unit_type: str, params: dict[str, Any]) -> float:
    if unit_type == "second":
        return parse_duration_seconds(params.get("duration"), default=5)
    if unit_type == "minute":
        return _positive(params.get("duration"), 30) / 60
    if unit_type == "image":
        return _positive(params.get("num_images"), 1)
    return _positive(params.get("steps"), 1000)


_registry: ToolRegistry | None = None


def get_registry() -> ToolRegistry:
    global _registry
    if _registry is None:
        from app.services.tool_catalog import BUILTIN_TOOLS
        _registry = ToolRegistry(BUILTIN_TOOLS)
    return _registry

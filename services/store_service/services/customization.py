"""Typed product customization schemas and their pricing rules.

A product's customization form is stored as a JSON field list. Before any
pricing happens the list is parsed into a tagged union of field models (one
class per field kind), and the shopper's submitted values are resolved
against it exactly once. Pricing only ever sees the resulting
``ResolvedCustomization``; the raw client payload never leaves this module.
"""

import re
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Annotated, Any, Literal, Optional, Union

from libs.common.currency import ZERO, round_money
from libs.common.logging import get_logger
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from services.store_service.errors import PricingValidationError

logger = get_logger(__name__)

QUANTITY_KEYWORDS = ("quantity", "cantidad", "unidades", "units", "qty")
_DIGITS = re.compile(r"\d+")

# Values a shopper may submit for a single field
FieldValue = Union[bool, int, float, str, list[Union[bool, int, float, str]], None]


@dataclass
class FieldPricing:
    modifier: Decimal = ZERO
    unit_price_override: Optional[Decimal] = None


def _as_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if value is None:
        return ""
    return str(value)


def _has_value(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, (str, list)) and len(value) == 0:
        return False
    return True


# ---------------------------------------------------------------------------
# Schema field kinds
# ---------------------------------------------------------------------------


class FieldCondition(BaseModel):
    model_config = ConfigDict(extra="ignore")

    depends_on: str
    show_when: Union[str, list[str]]


class _BaseField(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    label: str = ""
    required: bool = False
    price_modifier: Decimal = ZERO
    is_quantity_multiplier: bool = False
    condition: Optional[FieldCondition] = None

    @property
    def is_quantity_field(self) -> bool:
        if self.is_quantity_multiplier:
            return True
        haystacks = (self.id.lower(), self.label.lower())
        return any(k in h for k in QUANTITY_KEYWORDS for h in haystacks)

    def is_visible(self, values: dict[str, Any]) -> bool:
        if self.condition is None:
            return True
        dependent = _as_text(values.get(self.condition.depends_on))
        show_when = self.condition.show_when
        if isinstance(show_when, list):
            return dependent in show_when
        return dependent == show_when

    def price(self, value: Any) -> FieldPricing:
        return FieldPricing(modifier=round_money(self.price_modifier))


class FieldOption(BaseModel):
    model_config = ConfigDict(extra="ignore")

    value: str
    label: str = ""
    price_modifier: Optional[Decimal] = None
    unit_price_override: Optional[Decimal] = None


class DropdownField(_BaseField):
    type: Literal["dropdown"]
    options: list[FieldOption] = Field(default_factory=list)

    def price(self, value: Any) -> FieldPricing:
        option = _find_option(self, value)
        override = option.unit_price_override
        return FieldPricing(
            modifier=round_money(option.price_modifier or ZERO),
            unit_price_override=(
                round_money(override) if override is not None and override > 0 else None
            ),
        )


class ChoiceField(_BaseField):
    """Radio groups and card selectors: option modifier, else the field's."""

    type: Literal["radio_group", "card_selector"]
    options: list[FieldOption] = Field(default_factory=list)

    def price(self, value: Any) -> FieldPricing:
        option = _find_option(self, value)
        modifier = option.price_modifier
        if modifier is None:
            modifier = self.price_modifier
        return FieldPricing(modifier=round_money(modifier))


class CheckboxField(_BaseField):
    type: Literal["checkbox"]

    def price(self, value: Any) -> FieldPricing:
        if value is True:
            return FieldPricing(modifier=round_money(self.price_modifier))
        return FieldPricing()


class InputField(_BaseField):
    """Free-form text, number and dimensions inputs; flat modifier when filled."""

    type: Literal["text", "number", "dimensions"]


class ColorOption(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    name: str = ""
    price_modifier: Optional[Decimal] = None


class ColorSelectorField(_BaseField):
    type: Literal["color_selector"]
    colors: list[ColorOption] = Field(default_factory=list)
    multiple_selection: bool = False

    def price(self, value: Any) -> FieldPricing:
        selected = value if isinstance(value, list) else [value]
        by_id = {c.id: c for c in self.colors}
        total = ZERO
        for choice in selected:
            color = by_id.get(_as_text(choice))
            if color is None:
                raise PricingValidationError(
                    f"Invalid color selection for field: {self.id}"
                )
            if color.price_modifier is not None:
                total += round_money(color.price_modifier)
        return FieldPricing(modifier=round_money(total))


def _find_option(
    choice_field: Union[DropdownField, ChoiceField], value: Any
) -> FieldOption:
    wanted = _as_text(value)
    for option in choice_field.options:
        if option.value == wanted:
            return option
    raise PricingValidationError(
        f"Invalid option for customization field: {choice_field.id}"
    )


CustomizationField = Annotated[
    Union[DropdownField, ChoiceField, CheckboxField, InputField, ColorSelectorField],
    Field(discriminator="type"),
]

_fields_adapter = TypeAdapter(list[CustomizationField])


class CustomizationSchema(BaseModel):
    fields: list[CustomizationField]


def parse_schema(raw_fields: list) -> CustomizationSchema:
    """Parse a stored field list into typed field models."""
    try:
        return CustomizationSchema(fields=_fields_adapter.validate_python(raw_fields))
    except ValidationError as exc:
        logger.error("Invalid customization schema: %s", exc)
        raise PricingValidationError("Product customization is misconfigured") from exc


# ---------------------------------------------------------------------------
# Resolving submitted values
# ---------------------------------------------------------------------------


@dataclass
class ResolvedCustomization:
    """Already-validated customization, ready for pricing."""

    modifier: Decimal = ZERO
    unit_price_override: Optional[Decimal] = None
    quantity_override: Optional[int] = None
    selections: dict[str, Any] = field(default_factory=dict)


def extract_quantity(value: Any) -> int:
    """Read a line quantity out of a field value (never below 1)."""
    if isinstance(value, list):
        value = value[0] if value else None
    if isinstance(value, bool) or value is None:
        return 1
    if isinstance(value, (int, float)):
        return max(1, int(value))
    match = _DIGITS.search(str(value))
    if match:
        return max(1, int(match.group(0)))
    return 1


def resolve_customization(
    schema: CustomizationSchema, values: dict[str, Any]
) -> ResolvedCustomization:
    """Validate ``values`` against ``schema`` and compute its pricing effect.

    Only values for fields declared in the schema are kept; anything else the
    client sent is dropped.
    """
    resolved = ResolvedCustomization()
    modifier = ZERO

    for schema_field in schema.fields:
        value = values.get(schema_field.id)
        present = _has_value(value)

        if schema_field.required and not present and schema_field.is_visible(values):
            raise PricingValidationError(
                f"Missing required customization field: {schema_field.id}"
            )
        if not present:
            continue

        if schema_field.is_quantity_field:
            resolved.quantity_override = extract_quantity(value)

        pricing = schema_field.price(value)
        modifier += pricing.modifier
        if pricing.unit_price_override is not None:
            resolved.unit_price_override = pricing.unit_price_override

        resolved.selections[schema_field.id] = value

    resolved.modifier = round_money(modifier)
    return resolved

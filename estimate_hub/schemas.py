from __future__ import annotations

from typing import Any, Literal, Optional, TypeVar

from pydantic import BaseModel, Field, StrictBool, ValidationError, field_validator

from .core.errors import ValidationFailedError

ACT_IMAGE_TYPES = ("logo", "stamp", "signature")

PayloadT = TypeVar("PayloadT", bound=BaseModel)


def _amount(**kwargs: Any):
    return Field(ge=0, allow_inf_nan=False, **kwargs)


def parse_payload(model: type[PayloadT], data: Any = None, **values: Any) -> PayloadT:
    """Validate caller input, surfacing pydantic errors as ``ValidationFailedError``."""
    if isinstance(data, model):
        return data
    raw = dict(data or {})
    raw.update(values)
    try:
        return model.model_validate(raw)
    except ValidationError as exc:
        errors = [
            {"field": ".".join(str(part) for part in error.get("loc", ())), "message": error.get("msg", "")}
            for error in exc.errors()
        ]
        first = errors[0] if errors else {"field": "", "message": "invalid input"}
        raise ValidationFailedError(
            f"Invalid {model.__name__}: {first['field']} {first['message']}".strip(),
            errors=errors,
        ) from exc


class UserCreate(BaseModel):
    email: str = Field(..., min_length=3, max_length=255)
    name: str = Field(..., min_length=1, max_length=255)
    password_hash: str = Field(default="!", min_length=1, max_length=255)
    role: Literal["brigadir", "customer", "master"] = "brigadir"


class EstimateCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    google_sheet_id: Optional[str] = Field(default="", max_length=255)
    column_mapping: Optional[dict[str, Any]] = None

    @field_validator("title")
    @classmethod
    def _strip_title(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("title must not be blank")
        return value


class EstimateUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=255)
    google_sheet_id: Optional[str] = Field(default=None, max_length=255)
    column_mapping: Optional[dict[str, Any]] = None


class SectionCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)


class SectionUpdate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)


class ItemCreate(BaseModel):
    section_id: str = Field(..., min_length=1, max_length=64)
    name: str = Field(..., min_length=1, max_length=500)
    number: Optional[str] = Field(default="", max_length=64)
    unit: Optional[str] = Field(default="", max_length=64)
    quantity: float = _amount(default=0)


class ItemUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=500)
    unit: Optional[str] = Field(default=None, max_length=64)
    quantity: Optional[float] = _amount(default=None)


class ViewCreate(BaseModel):
    name: Optional[str] = Field(default=None, max_length=255)
    password: Optional[str] = Field(default=None, max_length=255)


class ViewUpdate(BaseModel):
    name: Optional[str] = Field(default=None, max_length=255)
    password: Optional[str] = Field(default=None, max_length=255)


class SectionVisibilityPayload(BaseModel):
    visible: StrictBool


class ItemOverridePayload(BaseModel):
    price: float = _amount()
    total: float = _amount()
    visible: StrictBool


class ItemSettingsPatch(BaseModel):
    price: Optional[float] = _amount(default=None)
    visible: Optional[StrictBool] = None


class VersionCreate(BaseModel):
    label: Optional[str] = Field(default=None, max_length=255)


class ActItemPayload(BaseModel):
    item_id: Optional[str] = Field(default=None, max_length=64)
    section_id: Optional[str] = Field(default=None, max_length=64)
    name: str = Field(default="", max_length=500)
    unit: str = Field(default="", max_length=64)
    quantity: float = _amount(default=0)
    price: float = _amount(default=0)
    total: float = _amount(default=0)


class ActCreate(BaseModel):
    act_number: str = Field(..., min_length=1, max_length=64)
    act_date: Optional[str] = Field(default=None, max_length=32)
    view_id: Optional[str] = Field(default=None, max_length=64)
    executor_name: str = Field(default="", max_length=255)
    executor_details: str = Field(default="", max_length=2000)
    customer_name: str = Field(default="", max_length=255)
    director_name: str = Field(default="", max_length=255)
    service_name: str = Field(default="", max_length=500)
    selection_mode: Literal["sections", "items"] = "sections"
    items: list[ActItemPayload] = Field(default_factory=list)


class ActImageUpload(BaseModel):
    image_type: Literal["logo", "stamp", "signature"]
    data: str = Field(..., min_length=1)


class MaterialCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=500)
    article: str = Field(default="", max_length=255)
    brand: str = Field(default="", max_length=255)
    unit: str = Field(default="шт", max_length=64)
    price: float = _amount(default=0)
    quantity: float = _amount(default=1)
    url: str = Field(default="", max_length=2000)
    description: str = Field(default="", max_length=5000)


class MaterialUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=500)
    article: Optional[str] = Field(default=None, max_length=255)
    brand: Optional[str] = Field(default=None, max_length=255)
    unit: Optional[str] = Field(default=None, max_length=64)
    price: Optional[float] = _amount(default=None)
    quantity: Optional[float] = _amount(default=None)
    url: Optional[str] = Field(default=None, max_length=2000)
    description: Optional[str] = Field(default=None, max_length=5000)

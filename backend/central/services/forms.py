"""
产品表单校验

产品的 form_schema 是一组字段定义（名称、类型、是否必填、选项），
领取激活时按字段定义动态生成 pydantic 模型来校验用户提交的数据，
校验通过的数据作为不透明文档保存。
"""
from __future__ import annotations

from typing import Any, Literal, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    EmailStr,
    Field,
    HttpUrl,
    ValidationError,
    create_model,
)

from central.api.errors import ValidationFailedError
from central.enums import FormFieldType


class FormField(BaseModel):
    """表单字段定义"""

    model_config = ConfigDict(extra="ignore")

    name: str = Field(min_length=1)
    type: FormFieldType = FormFieldType.text
    label: str | None = None
    required: bool = False
    placeholder: str | None = None
    options: list[str] | None = None


def parse_schema(raw: list[dict] | None) -> list[FormField]:
    """把数据库中保存的 JSON 字段列表解析为 FormField 列表"""
    if not raw:
        return []
    try:
        return [FormField.model_validate(item) for item in raw]
    except ValidationError as e:
        raise ValidationFailedError(
            code=400201, message=f"Invalid form schema: {e.error_count()} error(s)"
        ) from e


def _annotation_for(field: FormField) -> Any:
    if field.type == FormFieldType.email:
        return EmailStr
    if field.type == FormFieldType.url:
        return HttpUrl
    if field.type == FormFieldType.number:
        return float
    if field.type == FormFieldType.select and field.options:
        return Literal[tuple(field.options)]  # type: ignore[valid-type]
    return str


def build_model(product_id: str, fields: list[FormField]) -> type[BaseModel]:
    """按字段定义生成校验模型（未定义的字段会被丢弃）"""
    definitions: dict[str, Any] = {}
    for field in fields:
        annotation = _annotation_for(field)
        if field.required:
            definitions[field.name] = (annotation, ...)
        else:
            definitions[field.name] = (Optional[annotation], None)
    return create_model(  # type: ignore[call-overload]
        f"FormData_{product_id}",
        __config__=ConfigDict(extra="ignore", str_strip_whitespace=True),
        **definitions,
    )


def validate_form_data(
    *, product_id: str, schema: list[dict] | None, data: dict[str, Any] | None
) -> dict[str, Any]:
    """
    校验一个产品的表单数据

    Args:
        product_id: 产品 ID（用于错误消息）
        schema: 产品的 form_schema
        data: 用户提交的数据

    Returns:
        校验并规范化后的数据（JSON 可序列化）

    Raises:
        ValidationFailedError: 必填字段缺失、类型不符或选项不合法
    """
    fields = parse_schema(schema)
    if not fields:
        return dict(data or {})

    # 空字符串视为未填写
    cleaned = {k: v for k, v in (data or {}).items() if v not in ("", None)}
    model = build_model(product_id, fields)
    try:
        validated = model.model_validate(cleaned)
    except ValidationError as e:
        problems = ", ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ValidationFailedError(
            code=400202, message=f"Invalid form data for {product_id}: {problems}"
        ) from e
    return validated.model_dump(mode="json", exclude_none=True)

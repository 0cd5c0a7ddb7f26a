from datetime import datetime

from pydantic import BaseModel, Field, field_validator


class EmailTemplateCreate(BaseModel):
    name: str = Field(..., max_length=255)
    subject: str = Field(..., max_length=255)
    html_content: str
    type: str = Field("GENERIC", max_length=32)
    variables: list[str] | None = None

    @field_validator("name", "subject", "html_content")
    @classmethod
    def _not_blank(cls, v: str | None, info) -> str | None:
        if v is not None and not v.strip():
            raise ValueError(f"Template {info.field_name} is required")
        return v.strip() if v is not None else None


class EmailTemplateUpdate(BaseModel):
    name: str | None = Field(None, max_length=255)
    subject: str | None = Field(None, max_length=255)
    html_content: str | None = None
    type: str | None = Field(None, max_length=32)
    variables: list[str] | None = None
    is_active: bool | None = None

    @field_validator("name", "subject", "html_content")
    @classmethod
    def _not_blank(cls, v: str | None, info) -> str | None:
        if v is not None and not v.strip():
            raise ValueError(f"Template {info.field_name} is required")
        return v.strip() if v is not None else None


class EmailTemplateOut(BaseModel):
    id: int
    name: str
    subject: str
    html_content: str
    type: str
    variables: list[str]
    is_active: bool
    created_by_id: int | None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True

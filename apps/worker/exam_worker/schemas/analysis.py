from pydantic import BaseModel, Field, field_validator


class DetectedQuestion(BaseModel):
    id: str = Field(min_length=1)
    # Either one [ymin, xmin, ymax, xmax] box or a list of them, 0-1000 space.
    boxes_2d: list[float] | list[list[float]]

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, value: object) -> object:
        if isinstance(value, (int, float)):
            return str(value)
        return value

    @field_validator("boxes_2d")
    @classmethod
    def validate_boxes(cls, value: list) -> list:
        boxes = value if value and isinstance(value[0], list) else [value]
        for box in boxes:
            if len(box) != 4:
                raise ValueError("each box must be [ymin, xmin, ymax, xmax]")
        return value


class QuestionAnalysis(BaseModel):
    picture_ok: bool
    difficulty: int = Field(ge=1, le=5)
    question_type: str
    tags: list[str]
    question_md: str
    solution_md: str
    analysis_md: str

    @field_validator("question_type", "question_md", "solution_md", "analysis_md")
    @classmethod
    def require_text(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be empty")
        return value

    @field_validator("tags")
    @classmethod
    def require_tags(cls, value: list[str]) -> list[str]:
        cleaned = [tag.strip() for tag in value if tag.strip()]
        if not cleaned:
            raise ValueError("must contain at least one tag")
        return cleaned

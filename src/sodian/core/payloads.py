"""
Typed update payloads
=====================
One pydantic model per ``KnowledgeGraphUpdate.type``. Payloads are validated at
the graph store boundary; the validated model is what becomes a node's (or a
link's) properties.

Learning paths and meta patterns are opaque to the store: their models accept
any extra keys and pass them through untouched.
"""

from typing import Any, Dict, List, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from .exceptions import ValidationError
from .models import NodeType, UpdateType


class _Payload(BaseModel):
    model_config = ConfigDict(extra="allow")

    def to_properties(self) -> Dict[str, Any]:
        """Flatten the payload (declared and extra keys) into node properties."""
        return self.model_dump(exclude_none=True)


class NotePayload(_Payload):
    """A note filed into the vault by the curation collaborator."""
    folder: str = ""
    filename: str = ""
    content: str = ""
    summary: Optional[str] = None

    @property
    def path(self) -> str:
        return join_note_path(self.folder, self.filename)


class LinkPayload(_Payload):
    """A link between two nodes, or a reference to one by ``id``.

    Endpoints may be omitted when ``id`` is given (update, merge or delete of a
    known link). Creating a link always needs both endpoints.
    """
    id: Optional[str] = None
    source: Optional[str] = Field(None, min_length=1)
    target: Optional[str] = Field(None, min_length=1)
    relationship: str = "related"
    strength: Optional[float] = None
    bidirectional: bool = False

    @field_validator("relationship")
    @classmethod
    def relationship_not_blank(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("relationship cannot be blank")
        return v.strip()

    @model_validator(mode="after")
    def id_or_endpoints(self) -> "LinkPayload":
        if not self.id and not (self.source and self.target):
            raise ValueError("link needs an id or both source and target")
        return self

    @property
    def has_endpoints(self) -> bool:
        return bool(self.source and self.target)


class TagPayload(_Payload):
    tags: List[str]
    target: Optional[str] = None

    @field_validator("tags")
    @classmethod
    def tags_not_blank(cls, v: List[str]) -> List[str]:
        for tag in v:
            if not tag or not tag.strip():
                raise ValueError("tags cannot contain blank entries")
        return v


class TagProperties(_Payload):
    """Properties of a materialized Tag node."""
    name: str
    key: str


class LearningPathPayload(_Payload):
    id: Optional[str] = None


class MetaPatternPayload(_Payload):
    pass


PAYLOAD_MODELS: Dict[UpdateType, Type[_Payload]] = {
    UpdateType.NOTE: NotePayload,
    UpdateType.LINK: LinkPayload,
    UpdateType.TAG: TagPayload,
    UpdateType.LEARNING_PATH: LearningPathPayload,
    UpdateType.LEARNING_PROGRESS: LearningPathPayload,
    UpdateType.META_PATTERN: MetaPatternPayload,
}

NODE_PAYLOAD_MODELS: Dict[NodeType, Type[_Payload]] = {
    NodeType.NOTE: NotePayload,
    NodeType.TAG: TagProperties,
    NodeType.LEARNING_PATH: LearningPathPayload,
    NodeType.META_PATTERN: MetaPatternPayload,
}


def parse_payload(update_type: UpdateType, data: Dict[str, Any]) -> _Payload:
    """
    Validate ``data`` against the payload model for ``update_type``.

    Raises:
        ValidationError: If the payload has the wrong shape.
    """
    if not isinstance(data, dict):
        raise ValidationError(
            field=f"{update_type.value}.data",
            reason=f"expected a mapping, got {type(data).__name__}",
            value=data,
        )
    model = PAYLOAD_MODELS[update_type]
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        first = e.errors()[0]
        loc = ".".join(str(part) for part in first.get("loc", ())) or "data"
        raise ValidationError(
            field=f"{update_type.value}.{loc}",
            reason=first.get("msg", "invalid payload"),
            context={"error_count": e.error_count()},
        ) from e


def typed_properties(node_type: NodeType, properties: Dict[str, Any]) -> _Payload:
    """Rehydrate a node's stored properties into its typed variant."""
    return NODE_PAYLOAD_MODELS[node_type].model_validate(properties)


def join_note_path(folder: str, filename: str) -> str:
    """Join a vault folder and filename with exactly one separator."""
    folder = (folder or "").rstrip("/")
    filename = (filename or "").lstrip("/")
    if not folder:
        return filename
    return f"{folder}/{filename}"

from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

from homerules.states import StateValue


class SceneEntity(BaseModel):
    """The state one entity should be in when the scene is active"""

    state: StateValue = Field(description="The state value to apply")
    attributes: dict[str, Any] = Field(
        default_factory=dict, description="The attributes to apply"
    )


class Scene(BaseModel):
    """A scene is a named bundle of entity states, applied all at once"""

    name: str
    description: Optional[str] = Field(
        default=None, description="A description of the scene"
    )
    entities: dict[str, SceneEntity] = Field(description="The entity states for the scene")

    @field_validator("entities", mode="before")
    @classmethod
    def expand_shorthand(cls, value: Any) -> Any:
        # "light.kitchen: on" is short for "light.kitchen: {state: on}"
        if isinstance(value, dict):
            return {
                entity_id: item if isinstance(item, dict) else {"state": item}
                for entity_id, item in value.items()
            }
        return value

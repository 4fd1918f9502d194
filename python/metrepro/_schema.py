"""Pydantic models of the serialized document tree.

This is the shape exchanged with persistence and import/export collaborators::

    {
        "version": 1,
        "project": {
            "id": "project", "type": "project", "name": "Villa",
            "variables": [{"name": "H", "kind": "L", "definition": "2.5"}],
            "children": [
                {"id": "P1", "type": "poste", "name": "Murs",
                 "rows": [{"id": "r1", "designation": "Mur nord",
                           "unit": "M²", "L": 4, "S": "#r1.L*H", "V": null}]}
            ]
        }
    }

Only definitions are stored, never computed values.
"""

from __future__ import annotations

from typing import Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator

from metrepro._utils import is_valid_id

SCHEMA_VERSION = 1

DefinitionValue = Optional[Union[float, str]]


def _check_id(value: str) -> str:
    if not is_valid_id(value):
        raise ValueError(f"invalid id {value!r}: expected letters, digits, '_' or '-'")
    return value


class VariableModel(BaseModel):
    name: str
    kind: Literal["L", "S", "V"] = "L"
    definition: DefinitionValue = None

    @field_validator("kind", mode="before")
    @classmethod
    def upper_kind(cls, value: object) -> object:
        return value.strip().upper() if isinstance(value, str) else value


class RowModel(BaseModel):
    id: str
    designation: str = ""
    unit: Optional[str] = None
    L: DefinitionValue = None
    S: DefinitionValue = None
    V: DefinitionValue = None

    @field_validator("id")
    @classmethod
    def validate_id(cls, value: str) -> str:
        return _check_id(value)


class NodeModel(BaseModel):
    id: str
    type: Literal["project", "folder", "poste"]
    name: str = ""
    variables: list[VariableModel] = Field(default_factory=list)
    children: list[NodeModel] = Field(default_factory=list)
    rows: list[RowModel] = Field(default_factory=list)

    @field_validator("id")
    @classmethod
    def validate_id(cls, value: str) -> str:
        return _check_id(value)

    @model_validator(mode="after")
    def check_content(self) -> NodeModel:
        if self.type == "poste" and self.children:
            raise ValueError(f"poste {self.id!r} cannot contain nodes")
        if self.type != "poste" and self.rows:
            raise ValueError(f"{self.type} {self.id!r} cannot contain rows")
        for child in self.children:
            if child.type == "project":
                raise ValueError(f"project node {child.id!r} must be the root")
        return self


class DocumentModel(BaseModel):
    version: int = SCHEMA_VERSION
    project: NodeModel

    @field_validator("project")
    @classmethod
    def check_root(cls, value: NodeModel) -> NodeModel:
        if value.type != "project":
            raise ValueError("the root node must have type 'project'")
        return value


NodeModel.model_rebuild()

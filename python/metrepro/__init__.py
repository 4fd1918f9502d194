"""metrepro - quantity takeoff (métré) formulas, variables and totals.

Usage::

    from metrepro import Project, AddRow, DeclareVariable

    project = Project()
    project.load_document({
        "project": {
            "id": "project", "type": "project",
            "children": [{"id": "P1", "type": "poste", "rows": [{"id": "r1", "L": 4}]}],
        }
    })
    project.submit(DeclareVariable("P1", "H", "L", "2.5"))
    project.request_edit("#r1.S", "#r1.L * H")
    print(project.get_computed("#r1.S").value)   # 10.0
    print(project.display_total("project", "S"))  # "10.00"
"""

from metrepro._document import Document, Node, NodeType, Row
from metrepro._project import Project
from metrepro._schema import DocumentModel, NodeModel, RowModel, VariableModel
from metrepro._settings import Settings, load_settings
from metrepro.calc import (
    AddNode,
    AddRow,
    CalcError,
    Committed,
    ComputedValue,
    DeclareVariable,
    Dimension,
    EditError,
    ErrorKind,
    MetreEngine,
    MoveNode,
    MoveRow,
    Queued,
    Rejected,
    RemoveNode,
    RemoveRow,
    RemoveVariable,
    RenameVariable,
    SetDefinition,
)

__version__ = "0.1.0"

__all__ = [
    "__version__",
    "AddNode",
    "AddRow",
    "CalcError",
    "Committed",
    "ComputedValue",
    "DeclareVariable",
    "Dimension",
    "Document",
    "DocumentModel",
    "EditError",
    "ErrorKind",
    "MetreEngine",
    "MoveNode",
    "MoveRow",
    "Node",
    "NodeModel",
    "NodeType",
    "Project",
    "Queued",
    "Rejected",
    "RemoveNode",
    "RemoveRow",
    "RemoveVariable",
    "RenameVariable",
    "Row",
    "RowModel",
    "SetDefinition",
    "Settings",
    "VariableModel",
    "load_settings",
]

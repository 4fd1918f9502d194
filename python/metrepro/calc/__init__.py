"""metrepro.calc - Formula resolution and recalculation engine."""

from metrepro.calc._aggregation import AggregationTree, combine
from metrepro.calc._edits import (
    AddNode,
    AddRow,
    DeclareVariable,
    Edit,
    MoveNode,
    MoveRow,
    RemoveNode,
    RemoveRow,
    RemoveVariable,
    RenameVariable,
    SetDefinition,
)
from metrepro.calc._evaluator import Evaluator
from metrepro.calc._functions import FUNCTION_WHITELIST, FunctionRegistry, is_supported
from metrepro.calc._graph import DependencyGraph
from metrepro.calc._parser import (
    Definition,
    Expression,
    ParseError,
    cell_key,
    parse,
    parse_cell_key,
    parse_definition,
)
from metrepro.calc._protocol import (
    Committed,
    EditOutcome,
    MetreEngine,
    Queued,
    Rejected,
    ValueDelta,
)
from metrepro.calc._registry import Variable, VariableRegistry, variable_key
from metrepro.calc._scheduler import RecalcScheduler, RecalcState
from metrepro.calc._values import (
    CalcError,
    ComputedValue,
    CyclicDependencyError,
    Dimension,
    DuplicateNameError,
    EditError,
    ErrorKind,
    InvalidEditError,
    NotFoundError,
    ParseFailure,
)

__all__ = [
    "AddNode",
    "AddRow",
    "AggregationTree",
    "CalcError",
    "Committed",
    "ComputedValue",
    "CyclicDependencyError",
    "DeclareVariable",
    "Definition",
    "DependencyGraph",
    "Dimension",
    "DuplicateNameError",
    "Edit",
    "EditError",
    "EditOutcome",
    "ErrorKind",
    "Evaluator",
    "Expression",
    "FUNCTION_WHITELIST",
    "FunctionRegistry",
    "InvalidEditError",
    "MetreEngine",
    "MoveNode",
    "MoveRow",
    "NotFoundError",
    "ParseError",
    "ParseFailure",
    "Queued",
    "RecalcScheduler",
    "RecalcState",
    "Rejected",
    "RemoveNode",
    "RemoveRow",
    "RemoveVariable",
    "RenameVariable",
    "SetDefinition",
    "ValueDelta",
    "Variable",
    "VariableRegistry",
    "cell_key",
    "combine",
    "is_supported",
    "parse",
    "parse_cell_key",
    "parse_definition",
    "variable_key",
]

"""
Value objects shared by the bloat estimator and the reindex coordinator.

Every record here is an immutable snapshot produced fresh on each call.
Nothing is cached or persisted between runs.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional


def _clamp_bloat(real_size, bloat_size):
    """Returns (bloat_size, bloat_ratio) forced into 0 <= bloat <= real."""
    real_size = max(int(real_size or 0), 0)
    bloat_size = min(max(int(bloat_size or 0), 0), real_size)
    ratio = 100.0 * bloat_size / real_size if real_size > 0 else 0.0
    return bloat_size, ratio


@dataclass(frozen=True)
class TableBloatRecord:
    schema: str
    table_name: str
    real_size_bytes: int
    bloat_size_bytes: int
    bloat_ratio: float

    @classmethod
    def from_row(cls, row):
        """Builds a record from a raw statistics row, clamping stale estimates."""
        real_size = max(int(row['real_size'] or 0), 0)
        bloat_size, ratio = _clamp_bloat(real_size, row['bloat_size'])
        return cls(
            schema=str(row['schemaname']),
            table_name=str(row['tblname']),
            real_size_bytes=real_size,
            bloat_size_bytes=bloat_size,
            bloat_ratio=ratio,
        )

    @property
    def qualified_name(self):
        return f"{self.schema}.{self.table_name}"

    def to_dict(self):
        return {
            'schema': self.schema,
            'table_name': self.table_name,
            'real_size_bytes': self.real_size_bytes,
            'bloat_size_bytes': self.bloat_size_bytes,
            'bloat_ratio': round(self.bloat_ratio, 2),
        }


@dataclass(frozen=True)
class IndexBloatRecord:
    schema: str
    table_name: str
    index_name: str
    real_size_bytes: int
    bloat_size_bytes: int
    bloat_ratio: float

    @classmethod
    def from_row(cls, row):
        """Builds a record from a raw statistics row, clamping stale estimates."""
        real_size = max(int(row['real_size'] or 0), 0)
        bloat_size, ratio = _clamp_bloat(real_size, row['bloat_size'])
        return cls(
            schema=str(row['schemaname']),
            table_name=str(row['tblname']),
            index_name=str(row['idxname']),
            real_size_bytes=real_size,
            bloat_size_bytes=bloat_size,
            bloat_ratio=ratio,
        )

    @property
    def qualified_name(self):
        return f"{self.schema}.{self.index_name}"

    def to_dict(self):
        return {
            'schema': self.schema,
            'table_name': self.table_name,
            'index_name': self.index_name,
            'real_size_bytes': self.real_size_bytes,
            'bloat_size_bytes': self.bloat_size_bytes,
            'bloat_ratio': round(self.bloat_ratio, 2),
        }


@dataclass(frozen=True)
class IndexDefinition:
    oid: int
    definition: str


class ConstraintKind(Enum):
    """Constraint kinds as reported by pg_constraint.contype."""
    PRIMARY_KEY = "p"
    UNIQUE = "u"
    OTHER = "?"

    @classmethod
    def from_code(cls, code):
        for kind in (cls.PRIMARY_KEY, cls.UNIQUE):
            if kind.value == code:
                return kind
        return cls.OTHER

    @property
    def ddl_keyword(self):
        if self is ConstraintKind.PRIMARY_KEY:
            return "PRIMARY KEY"
        if self is ConstraintKind.UNIQUE:
            return "UNIQUE"
        return None


@dataclass(frozen=True)
class ConstraintInfo:
    oid: int
    kind: ConstraintKind
    code: str
    deferrable: bool = False
    initially_deferred: bool = False


@dataclass(frozen=True)
class ForeignKeyDependent:
    name: str
    table_name: str
    schema: str
    kind_code: str
    definition: str
    validated: bool = True

    @property
    def is_foreign_key(self):
        return self.kind_code == "f"


class TransactionScope(Enum):
    """Where a plan step's statements are allowed to run."""
    AUTONOMOUS = "autonomous"
    TRANSACTION = "transaction"


@dataclass(frozen=True)
class PlanStep:
    name: str
    scope: TransactionScope
    statements: tuple

    def __post_init__(self):
        if not self.statements:
            raise ValueError(f"Plan step '{self.name}' has no statements")


@dataclass
class ReindexPlan:
    """
    Ordered DDL for rebuilding one index.

    Steps run strictly in order; each one carries the transaction scope
    it needs so the executor, not the caller, decides where to commit.
    """
    target: IndexBloatRecord
    temp_name: str
    definition: Optional[IndexDefinition] = None
    constraint: Optional[ConstraintInfo] = None
    dependents: List[ForeignKeyDependent] = field(default_factory=list)
    steps: List[PlanStep] = field(default_factory=list)

    def add_step(self, name, scope, statements):
        self.steps.append(PlanStep(name, scope, tuple(statements)))

    @property
    def statements(self):
        return [stmt for step in self.steps for stmt in step.statements]

    def step_names(self):
        return [step.name for step in self.steps]

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

SectionShape = Literal["list", "by_period", "by_month"]


@dataclass(frozen=True, slots=True)
class EntityKind:
    collection: str
    section: str
    label: str
    shape: SectionShape
    since_version: str
    key_prefix: str
    replaceable: bool = True


USERS = EntityKind("users", "usuarios", "User", "list", "1.0", "user", replaceable=False)
CLIENTS = EntityKind("clients", "clientes", "Client", "list", "1.0", "client")
MONTHLY_PAYMENTS = EntityKind("monthly_payments", "pagosMensuales", "MonthlyPayment", "by_month", "1.0", "payment")
EXPENSES = EntityKind("expenses", "gastos", "Expense", "by_period", "1.0", "expense")
INCOMES = EntityKind("incomes", "ingresos", "Income", "by_period", "1.0", "income")
BUDGETS = EntityKind("budgets", "presupuestos", "Budget", "list", "2.1", "budget")
MEETINGS = EntityKind("meetings", "reuniones", "Meeting", "list", "2.2", "meeting")
TASKS = EntityKind("tasks", "tareas", "Task", "list", "2.2", "task")
TEAM_MEMBERS = EntityKind("team_members", "equipo", "TeamMember", "list", "2.3", "member")
ACTIVITY_LISTS = EntityKind("activity_lists", "activityLists", "ActivityList", "list", "2.4", "list")
ACTIVITIES = EntityKind("activities", "activities", "Activity", "list", "2.4", "activity")
REPORTS = EntityKind("reports", "reports", "Report", "list", "2.4", "report")

# Replace order: users first so references resolve, lists before activities.
ENTITIES: tuple[EntityKind, ...] = (
    USERS,
    CLIENTS,
    MONTHLY_PAYMENTS,
    EXPENSES,
    INCOMES,
    BUDGETS,
    MEETINGS,
    TASKS,
    TEAM_MEMBERS,
    ACTIVITY_LISTS,
    ACTIVITIES,
    REPORTS,
)

ALL_COLLECTIONS: tuple[str, ...] = tuple(entity.collection for entity in ENTITIES)

LEGACY_SECTIONS = frozenset({"clientesEliminados"})


def version_tuple(raw: object) -> tuple[int, ...]:
    if not isinstance(raw, str) or not raw.strip():
        return (0,)
    parts: list[int] = []
    for piece in raw.strip().split("."):
        if not piece.isdigit():
            break
        parts.append(int(piece))
    return tuple(parts) or (0,)


def expected_sections(version: object) -> list[str]:
    current = version_tuple(version)
    return [entity.section for entity in ENTITIES if version_tuple(entity.since_version) <= current]

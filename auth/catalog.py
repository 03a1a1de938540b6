"""
auth/catalog.py -- Immutable, versioned role catalog and the system role table.

The catalog maps role id -> Role. It is built once at startup (system roles
seeded into the store, then every stored role loaded) and passed by reference
to the permission engine. Role edits never mutate a catalog: with_role() and
without_role() return a NEW catalog with version + 1, and the caller swaps
the reference. A request that captured the old catalog finishes against a
consistent snapshot.

Consistency rule checked at construction: every permission's resource must
belong to a module the role claims ("*" resource requires the "*" module).
A role that violates it raises ValueError and never enters a catalog.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping
from types import MappingProxyType

from auth.models import ModulePermission, Role, Scope

# ---------------------------------------------------------------------------
# Modules and resource ownership
# ---------------------------------------------------------------------------

MODULES: tuple[str, ...] = (
    "sales",
    "crm",
    "inventory",
    "finance",
    "hrm",
    "projects",
    "manufacturing",
    "marketing",
    "support",
    "analytics",
    "ecommerce",
    "admin",
)

WILDCARD = "*"

_RESOURCES_BY_MODULE: dict[str, tuple[str, ...]] = {
    "sales": ("order", "quote", "pipeline", "revenue", "sales_reports", "sales_data", "sales_team"),
    "crm": ("customer", "lead", "contact", "customer_data", "call_center", "crm_reports"),
    "inventory": ("product", "stock", "warehouse", "supplier", "purchase", "inventory_reports", "stock_alerts"),
    "finance": (
        "invoice",
        "payment",
        "expense",
        "account",
        "budget",
        "financial_reports",
        "journal_entry",
        "tax",
        "cash_flow",
    ),
    "hrm": (
        "employee",
        "department",
        "position",
        "attendance",
        "payroll",
        "leave",
        "leave_request",
        "hr_reports",
        "department_reports",
    ),
    "projects": ("project", "task", "team", "time_entry", "milestone"),
    "manufacturing": ("production", "work_order", "bom", "quality_control"),
    "marketing": ("campaign", "content", "social_media", "email_campaign", "marketing_reports"),
    "support": ("ticket", "knowledge_base", "support_reports"),
    "analytics": ("dashboard", "report", "analytics"),
    "ecommerce": ("store", "cart", "online_order", "promotion"),
    "admin": ("user", "role", "permission", "settings", "system_logs"),
}

RESOURCE_MODULES: Mapping[str, str] = MappingProxyType(
    {resource: module for module, resources in _RESOURCES_BY_MODULE.items() for resource in resources}
)


def module_for_resource(resource: str) -> str | None:
    """Return the module that owns `resource`, "*" for the wildcard, None if unknown."""
    if resource == WILDCARD:
        return WILDCARD
    return RESOURCE_MODULES.get(resource)


# ---------------------------------------------------------------------------
# Role policy constants
# ---------------------------------------------------------------------------

SUPER_LEVEL = 10
MIN_LEVEL = 1
DEFAULT_ROLE_ID = "user"

# Never deletable, regardless of the actor's level.
CRITICAL_ROLES: frozenset[str] = frozenset({"super_admin", "system_admin", "hr_manager", "employee", DEFAULT_ROLE_ID})


def validate_role(role: Role) -> None:
    """Raise ValueError if `role` is internally inconsistent."""
    if not role.id or not role.name:
        raise ValueError("Role id and name are required")
    if not MIN_LEVEL <= role.level <= SUPER_LEVEL:
        raise ValueError(f"Role level must be between {MIN_LEVEL} and {SUPER_LEVEL}, got {role.level}")
    unknown = [m for m in role.modules if m != WILDCARD and m not in MODULES]
    if unknown:
        raise ValueError(f"Role {role.id!r} claims unknown modules: {unknown}")
    claimed = set(role.modules)
    for perm in role.permissions:
        module = module_for_resource(perm.resource)
        if module is None:
            raise ValueError(f"Role {role.id!r}: unknown resource {perm.resource!r}")
        if WILDCARD in claimed:
            continue
        if module not in claimed:
            raise ValueError(f"Role {role.id!r}: permission {perm} needs module {module!r}, not claimed by the role")


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------


class RoleCatalog(Mapping):
    """Read-only mapping of role id -> Role with a monotonically increasing version."""

    def __init__(self, roles: Iterable[Role] = (), version: int = 1) -> None:
        table: dict[str, Role] = {}
        for role in roles:
            validate_role(role)
            table[role.id] = role
        self._roles = MappingProxyType(table)
        self.version = version

    def __getitem__(self, role_id: str) -> Role:
        return self._roles[role_id]

    def __iter__(self) -> Iterator[str]:
        return iter(self._roles)

    def __len__(self) -> int:
        return len(self._roles)

    def __repr__(self) -> str:
        return f"RoleCatalog(version={self.version}, roles={len(self)})"

    def with_role(self, role: Role) -> "RoleCatalog":
        """Return a new catalog with `role` added or replaced."""
        roles = dict(self._roles)
        roles[role.id] = role
        return RoleCatalog(roles.values(), version=self.version + 1)

    def without_role(self, role_id: str) -> "RoleCatalog":
        roles = {rid: r for rid, r in self._roles.items() if rid != role_id}
        return RoleCatalog(roles.values(), version=self.version + 1)


# ---------------------------------------------------------------------------
# System roles
# ---------------------------------------------------------------------------


def _grants(scope: Scope, *specs: str) -> tuple[ModulePermission, ...]:
    """Build permissions from "action:resource" specs, all at `scope`."""
    return tuple(ModulePermission(*spec.split(":"), scope=scope) for spec in specs)


def _crud(resource: str) -> tuple[str, ...]:
    return tuple(f"{action}:{resource}" for action in ("read", "create", "update", "delete"))


SYSTEM_ROLES: tuple[Role, ...] = (
    Role(
        id="super_admin",
        name="Super Administrator",
        description="Full system access with all permissions",
        level=SUPER_LEVEL,
        modules=(WILDCARD,),
        permissions=_grants(Scope.ALL, "manage:*"),
        is_system=True,
    ),
    Role(
        id="system_admin",
        name="System Administrator",
        description="System administration and user management",
        level=9,
        modules=("admin", "analytics"),
        permissions=_grants(
            Scope.ALL,
            "manage:user",
            "manage:role",
            "manage:permission",
            "read:system_logs",
            "manage:settings",
            "read:dashboard",
        ),
        is_system=True,
    ),
    Role(
        id="sales_manager",
        name="Sales Manager",
        description="Sales and customer relationship management",
        level=8,
        modules=("sales", "crm", "analytics"),
        permissions=_grants(
            Scope.ALL,
            *_crud("order"),
            "approve:order",
            "cancel:order",
            *_crud("quote"),
            "approve:quote",
            "manage:pipeline",
            "read:revenue",
            "read:sales_reports",
            "export:sales_data",
            "manage:sales_team",
            *_crud("customer"),
            *_crud("lead"),
            "assign:lead",
            "convert:lead",
            "read:contact",
            "create:contact",
            "update:contact",
        )
        + _grants(Scope.DEPARTMENT, "read:dashboard", "read:report"),
        is_system=True,
    ),
    Role(
        id="finance_manager",
        name="Finance Manager",
        description="Financial operations and reporting",
        level=8,
        modules=("finance", "analytics"),
        permissions=_grants(
            Scope.ALL,
            *_crud("invoice"),
            "approve:invoice",
            "send:invoice",
            "read:payment",
            "create:payment",
            "approve:payment",
            "read:account",
            "manage:account",
            "read:financial_reports",
            "create:journal_entry",
            "manage:tax",
            "read:budget",
            "create:budget",
            "approve:budget",
            "read:cash_flow",
        )
        + _grants(Scope.DEPARTMENT, "read:dashboard", "read:report"),
        is_system=True,
    ),
    Role(
        id="hr_manager",
        name="HR Manager",
        description="Human resources management",
        level=8,
        modules=("hrm", "analytics"),
        permissions=_grants(
            Scope.ALL,
            *_crud("employee"),
            "read:payroll",
            "process:payroll",
            "approve:payroll",
            "read:attendance",
            "manage:attendance",
            "read:leave",
            "approve:leave",
            "approve:leave_request",
            "manage:department",
            "manage:position",
            "read:hr_reports",
        )
        + _grants(Scope.DEPARTMENT, "read:dashboard", "read:report"),
        is_system=True,
    ),
    Role(
        id="operations_manager",
        name="Operations Manager",
        description="Inventory, manufacturing and project operations",
        level=8,
        modules=("inventory", "manufacturing", "projects", "analytics"),
        permissions=_grants(
            Scope.ALL,
            *_crud("product"),
            "read:stock",
            "update:stock",
            "transfer:stock",
            "manage:warehouse",
            "manage:supplier",
            "approve:purchase",
            "read:production",
            "create:production",
            "approve:production",
            *_crud("work_order"),
            "read:bom",
            "create:bom",
            "update:bom",
            "manage:quality_control",
            *_crud("project"),
            "manage:project",
            *_crud("task"),
            "assign:task",
        )
        + _grants(Scope.DEPARTMENT, "read:dashboard"),
        is_system=True,
    ),
    Role(
        id="marketing_manager",
        name="Marketing Manager",
        description="Marketing campaigns and online store",
        level=7,
        modules=("marketing", "ecommerce", "analytics"),
        permissions=_grants(
            Scope.ALL,
            "read:campaign",
            "create:campaign",
            "manage:campaign",
            "read:content",
            "create:content",
            "publish:content",
            "manage:social_media",
            "send:email_campaign",
            "read:marketing_reports",
            "manage:store",
            "manage:promotion",
            "read:online_order",
        )
        + _grants(Scope.DEPARTMENT, "read:dashboard"),
        is_system=True,
    ),
    Role(
        id="accountant",
        name="Accountant",
        description="Invoices, payments and bookkeeping",
        level=6,
        modules=("finance",),
        permissions=_grants(
            Scope.ALL,
            "read:invoice",
            "create:invoice",
            "read:payment",
            "create:payment",
            "read:financial_reports",
            "create:journal_entry",
        ),
        is_system=True,
    ),
    Role(
        id="project_manager",
        name="Project Manager",
        description="Projects and tasks for the manager's team",
        level=6,
        modules=("projects",),
        permissions=_grants(
            Scope.TEAM,
            *_crud("project"),
            *_crud("task"),
            "assign:task",
            "read:team",
            "read:time_entry",
            "approve:time_entry",
        ),
        is_system=True,
    ),
    Role(
        id="department_manager",
        name="Department Manager",
        description="Department-level management and oversight",
        level=6,
        modules=("hrm",),
        permissions=_grants(
            Scope.DEPARTMENT,
            "read:employee",
            "update:employee",
            "approve:leave_request",
            "read:department_reports",
        ),
        is_system=True,
    ),
    Role(
        id="sales_rep",
        name="Sales Representative",
        description="Own orders, quotes, customers and leads",
        level=5,
        modules=("sales", "crm"),
        permissions=_grants(
            Scope.OWN,
            "read:order",
            "create:order",
            "update:order",
            "read:quote",
            "create:quote",
            "read:customer",
            "update:customer",
            "read:lead",
            "update:lead",
        ),
        is_system=True,
    ),
    Role(
        id="support_agent",
        name="Support Agent",
        description="Tickets and knowledge base for the agent's department",
        level=4,
        modules=("support",),
        permissions=_grants(
            Scope.DEPARTMENT,
            "read:ticket",
            "create:ticket",
            "update:ticket",
            "assign:ticket",
            "close:ticket",
            "read:knowledge_base",
            "create:knowledge_base",
        ),
        is_system=True,
    ),
    Role(
        id="warehouse_staff",
        name="Warehouse Staff",
        description="Stock handling",
        level=4,
        modules=("inventory",),
        permissions=_grants(Scope.ALL, "read:product", "read:stock")
        + _grants(Scope.DEPARTMENT, "update:stock", "read:warehouse"),
        is_system=True,
    ),
    Role(
        id="team_lead",
        name="Team Lead",
        description="Team leadership and coordination",
        level=4,
        modules=("projects", "hrm"),
        permissions=_grants(Scope.TEAM, "read:employee", "read:task", "update:task", "create:task"),
        is_system=True,
    ),
    Role(
        id="employee",
        name="Employee",
        description="Basic employee self-service",
        level=3,
        modules=("hrm", "projects"),
        permissions=_grants(
            Scope.OWN,
            "read:employee",
            "update:employee",
            "read:attendance",
            "read:leave",
            "create:leave_request",
            "read:payroll",
            "read:task",
            "update:task",
            "create:time_entry",
        ),
        is_system=True,
    ),
    Role(
        id=DEFAULT_ROLE_ID,
        name="User",
        description="Default role for self-registered accounts",
        level=MIN_LEVEL,
        is_system=True,
    ),
)

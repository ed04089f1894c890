_MANAGERS = {"Admin", "Operator", "Gestionnaire"}
_ALL_STAFF = _MANAGERS | {"Architect"}

_MODULE_ROLES: dict[str, dict[str, set[str]]] = {
    "leads": {
        "read": _ALL_STAFF | {"Commercial", "Magasiner"},
        "create": _MANAGERS | {"Commercial", "Magasiner"},
        "update": _MANAGERS,
        "delete": {"Admin", "Operator"},
        "convert": _MANAGERS,
    },
    "contacts": {
        "read": _ALL_STAFF,
        "update": _MANAGERS,
        "delete": {"Admin", "Operator"},
    },
    "opportunities": {
        "read": _ALL_STAFF,
        "create": _MANAGERS,
        "update": _MANAGERS,
        "delete": {"Admin", "Operator"},
    },
    "clients": {
        "read": _ALL_STAFF | {"Chef de chantier"},
        "update": _MANAGERS | {"Architect"},
        "delete": {"Admin", "Operator"},
        "reconcile": {"Admin"},
    },
    "payments": {
        "read": _ALL_STAFF,
        "create": _MANAGERS,
        "delete": {"Admin", "Operator"},
    },
    "devis": {
        "read": _ALL_STAFF,
        "create": _MANAGERS | {"Architect"},
        "update": _MANAGERS | {"Architect"},
        "delete": {"Admin", "Operator"},
    },
    "notifications": {
        "read": _ALL_STAFF | {"Commercial", "Magasiner", "Chef de chantier"},
        "create": {"Admin", "Operator", "Gestionnaire"},
    },
    "users": {
        "read": {"Admin", "Operator"},
        "create": {"Admin", "Operator"},
    },
    "architects": {
        "read": {"Admin", "Operator"},
    },
}

# roles that only see rows they created, are assigned to, or are invited to
RESTRICTED_ROLES = frozenset({"Architect", "Commercial", "Magasiner", "Chef de chantier"})
ADMIN_ROLES = frozenset({"Admin", "Operator"})


def permissions_for_role(role: str) -> set[str]:
    granted: set[str] = set()
    for module, actions in _MODULE_ROLES.items():
        for action, roles in actions.items():
            if role in roles:
                granted.add(f"crm.{module}.{action}")
    if role == "Admin":
        granted.add("system.metrics.read")
    return granted



"""
Administrator roles and permission constants.

Roles are fixed; each role maps to a static permission set. An unknown role
has no permissions.
"""

# =============================================================================
# ROLES
# =============================================================================

class Role:
    SUPER_ADMIN = "super_admin"
    BUSINESS_PROCESSING = "business_processing"
    WEBSITE_ADMIN = "website_admin"


ADMIN_ROLES = (Role.SUPER_ADMIN, Role.BUSINESS_PROCESSING, Role.WEBSITE_ADMIN)


# =============================================================================
# PERMISSION DEFINITIONS
# =============================================================================

class Permission:
    # Orders
    VIEW_ALL_ORDERS = "view_all_orders"
    UPDATE_ORDER_STATUS = "update_order_status"

    # Catalog
    VIEW_PRODUCTS = "view_products"
    CREATE_PRODUCTS = "create_products"
    EDIT_PRODUCTS = "edit_products"
    DELETE_PRODUCTS = "delete_products"

    # Media
    VIEW_MEDIA = "view_media"
    UPLOAD_MEDIA = "upload_media"
    DELETE_MEDIA = "delete_media"

    # Settings
    VIEW_SETTINGS = "view_settings"
    EDIT_SETTINGS = "edit_settings"

    # Users
    VIEW_USERS = "view_users"
    MANAGE_USERS = "manage_users"

    # Audit
    VIEW_AUDIT_LOGS = "view_audit_logs"

    # Promotions and stored value
    MANAGE_DISCOUNTS = "manage_discounts"
    VIEW_GIFT_CARDS = "view_gift_cards"
    MANAGE_GIFT_CARDS = "manage_gift_cards"


_OPERATIONS = [
    Permission.VIEW_ALL_ORDERS,
    Permission.UPDATE_ORDER_STATUS,
    Permission.VIEW_PRODUCTS,
    Permission.CREATE_PRODUCTS,
    Permission.EDIT_PRODUCTS,
    Permission.DELETE_PRODUCTS,
    Permission.VIEW_MEDIA,
    Permission.UPLOAD_MEDIA,
    Permission.DELETE_MEDIA,
]

_ADMINISTRATION = [
    Permission.VIEW_SETTINGS,
    Permission.EDIT_SETTINGS,
    Permission.VIEW_USERS,
    Permission.MANAGE_USERS,
    Permission.VIEW_AUDIT_LOGS,
    Permission.MANAGE_DISCOUNTS,
    Permission.MANAGE_GIFT_CARDS,
]


# =============================================================================
# DEFAULT ROLE MAPPINGS
# =============================================================================

ROLE_PERMISSIONS = {
    Role.SUPER_ADMIN: frozenset(_OPERATIONS + _ADMINISTRATION + [Permission.VIEW_GIFT_CARDS]),
    Role.WEBSITE_ADMIN: frozenset(_OPERATIONS + _ADMINISTRATION + [Permission.VIEW_GIFT_CARDS]),
    Role.BUSINESS_PROCESSING: frozenset(_OPERATIONS + [Permission.VIEW_GIFT_CARDS]),
}


def permissions_for_role(role: str | None) -> frozenset:
    return ROLE_PERMISSIONS.get(role or "", frozenset())


def has_permission(role: str | None, permission: str) -> bool:
    return permission in permissions_for_role(role)

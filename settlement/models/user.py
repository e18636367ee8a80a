from enum import Enum


class UserRole(str, Enum):
    ADMIN = "admin"
    SUPPLIER = "supplier"
    MARKETER = "marketer"
    WHOLESALER = "wholesaler"


# Roles that own a wallet and may request withdrawals
WALLET_ROLES = {
    UserRole.ADMIN.value,
    UserRole.SUPPLIER.value,
    UserRole.MARKETER.value,
    UserRole.WHOLESALER.value,
}

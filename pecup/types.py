from enum import Enum


class UserRole(str, Enum):
    STUDENT = "student"
    REPRESENTATIVE = "representative"
    ADMIN = "admin"
    SUPERADMIN = "superadmin"


class AdminRole(str, Enum):
    ADMIN = "admin"
    SUPERADMIN = "superadmin"


class ResourceType(str, Enum):
    RESOURCES = "resources"
    RECORDS = "records"


class CacheStatus(str, Enum):
    HIT = "hit"
    MISS = "miss"
    BYPASS = "bypass"

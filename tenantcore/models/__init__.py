"""SQLAlchemy models for the main database and tenant schemas."""

from tenantcore.models.base import Base
from tenantcore.models.project import Project, UserGroupProject, UserProject
from tenantcore.models.reference import (
    MeterType,
    MeterTypeProject,
    ServiceType,
    TroubleCode,
    WorkOrderStatus,
)
from tenantcore.models.setting import SystemSetting
from tenantcore.models.user import (
    Permission,
    Subrole,
    SubrolePermission,
    User,
    UserGroup,
    UserGroupMember,
)
from tenantcore.models.work_order import work_orders_table

__all__ = [
    "Base",
    "MeterType",
    "MeterTypeProject",
    "Permission",
    "Project",
    "ServiceType",
    "Subrole",
    "SubrolePermission",
    "SystemSetting",
    "TroubleCode",
    "User",
    "UserGroup",
    "UserGroupMember",
    "UserGroupProject",
    "UserProject",
    "WorkOrderStatus",
    "work_orders_table",
]

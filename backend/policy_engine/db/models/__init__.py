from policy_engine.db.models.permission import PermissionModel
from policy_engine.db.models.role import RoleAssignmentModel, RoleModel, RolePermissionModel
from policy_engine.db.models.user_permission import UserPermissionModel
from policy_engine.db.models.trust_score import TrustScoreHistoryModel, TrustScoreModel, TrustSignalModel
from policy_engine.db.models.security_policy import PolicyViolationModel, SecurityPolicyModel
from policy_engine.db.models.security_alert import AlertRuleModel, SecurityAlertModel
from policy_engine.db.models.audit_event import AuditEventModel

__all__ = [
    "PermissionModel",
    "RoleModel",
    "RolePermissionModel",
    "RoleAssignmentModel",
    "UserPermissionModel",
    "TrustScoreModel",
    "TrustScoreHistoryModel",
    "TrustSignalModel",
    "SecurityPolicyModel",
    "PolicyViolationModel",
    "AlertRuleModel",
    "SecurityAlertModel",
    "AuditEventModel",
]

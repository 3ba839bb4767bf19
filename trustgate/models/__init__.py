from trustgate.db.base_class import Base
from trustgate.models.feature_flag import FeatureFlag, FlagRule, FlagOverride, FlagAuditLog
from trustgate.models.session import UserSession, SessionHijackingAttempt

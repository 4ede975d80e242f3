from gradeportal.models.account_lockout import AccountLockout
from gradeportal.models.login_attempt import LoginAttempt
from gradeportal.models.security_event import SecurityEvent, SecurityEventType

from reqlog.middleware.access_log import AccessLogConfig, AccessLogMiddleware
from reqlog.middleware.recovery import RecoveryMiddleware
from reqlog.middleware.trace import TraceIDMiddleware

__all__ = ["AccessLogConfig", "AccessLogMiddleware", "RecoveryMiddleware", "TraceIDMiddleware"]

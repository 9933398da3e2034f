from .database import Base, get_engine, get_session_factory, init_models
from .digest_template import DigestTemplate
from .digest import Digest
from .digest_run import DigestRun, RunStatus, RunType, RUN_TRANSITIONS
from .email_log import EmailLog

__all__ = [
    "Base", "get_engine", "get_session_factory", "init_models",
    "DigestTemplate", "Digest", "DigestRun", "RunStatus", "RunType", "RUN_TRANSITIONS", "EmailLog",
]

from .splitflag import *

from .common_types import (
    DecideOption,
    Decision,
    DecisionSource,
    Options,
    SegmentOption,
    AbstractUserProfileService,
    InMemoryUserProfileService,
    UserContext,
)
from .errors import SplitFlagError
from .project_config import ProjectConfig, set_holdouts_enabled
from .user_context import SplitFlagUserContext

__version__ = "0.1.0"

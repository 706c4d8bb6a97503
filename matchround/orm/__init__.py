from .base import Base

from .period import MatchingPeriod
from .application import MatchingApplication
from .match_result import MatchResult, MatchOutcome
from .star import StarWallet, StarTransaction

"""Error taxonomy for the call-handling path.

None of these are allowed to escape a call-handling task: each one is
caught at the seam where it is raised and converted into a spoken fallback
(or, for store writes, a log line).
"""


class HelplineError(Exception):
    """Base class for all helpline errors."""


class SessionNotFound(HelplineError, KeyError):
    pass


class ExtractionParseError(HelplineError):
    """Model output for slot extraction was not parseable JSON."""


class ModelError(HelplineError):
    pass


class ModelTimeout(ModelError):
    pass


class ModelRateLimitError(ModelError):
    """The model provider rejected the request with a rate limit."""


class SearchError(HelplineError):
    pass


class SearchTimeout(SearchError):
    pass


class CallInactive(HelplineError):
    """The call ended before an outward effect could be applied."""


class StoreWriteError(HelplineError):
    pass

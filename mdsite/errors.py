class SiteError(Exception):
    """A user-correctable problem. Reported as a single line, without a traceback."""


class MissingInputError(SiteError):
    pass

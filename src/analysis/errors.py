class BallotError(Exception):
    """Base class for rejected ballot operations."""

    pass


class Unauthorized(BallotError):
    """Raised when a non-administrator calls an administrator-only operation."""

    pass


class InvalidPhase(BallotError):
    """Raised when an operation is attempted outside its workflow status."""

    pass


class SelfWhitelist(BallotError):
    """Raised when the administrator tries to whitelist itself."""

    pass


class NotRegistered(BallotError):
    """Raised when the caller is not a whitelisted voter."""

    pass


class AlreadyVoted(BallotError):
    """Raised on a second vote from the same voter."""

    pass


class InvalidProposal(BallotError):
    """Raised when a proposal ID is out of range."""

    pass

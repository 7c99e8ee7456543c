"""
Error taxonomy for the decision engine.

Input errors subclass ValueError and always surface to the immediate caller.
Storage errors propagate out of the strategist; the storyboard assembler
treats them as recoverable per section.
"""


class BuildStoryError(Exception):
    """Base class for all BuildStory errors."""


# =============================================================================
# Input errors
# =============================================================================

class InputError(BuildStoryError, ValueError):
    """Caller supplied something the engine cannot work with."""


class EmptyCandidateListError(InputError):
    """No candidate sections (or arms) were supplied."""


class InvalidBanditParameterError(InputError):
    """Beta parameters or rewards outside their domain."""


class ContentHashError(InputError):
    """Section content could not be canonically serialized."""


# =============================================================================
# Storage errors
# =============================================================================

class StorageError(BuildStoryError):
    """The bandit state store failed an operation."""


class StorageUnavailableError(StorageError):
    """The store did not answer within the configured timeout."""


class ArmStateConflictError(StorageError):
    """A compare-and-set on an arm lost a race with a concurrent writer."""

    def __init__(self, scope: str, slot: str, variant_id: str):
        self.scope = scope
        self.slot = slot
        self.variant_id = variant_id
        super().__init__(
            f"Concurrent update on arm {scope}/{slot}/{variant_id[:12]}"
        )

"""
Error Taxonomy
Exceptions raised across the transcoding pipeline and the storage wrappers

MAINTENANCE WISDOM: Every failure the package raises derives from
MailStoreError, so an embedding server can catch one type at its boundary
while still telling a bad attachment write apart from a store outage.
"""


class MailStoreError(Exception):
    """Base class for all mailstore failures"""


class SpoolError(MailStoreError):
    """Temporary write or relocation of an attachment failed"""


class ParseError(MailStoreError):
    """The raw stream could not be turned into a message"""


class PipelineError(MailStoreError):
    """A post-parse step failed or broke the step contract"""


class BuildError(MailStoreError):
    """A raw message could not be composed from a stored record"""


class RepositoryError(MailStoreError):
    """A message store operation failed"""


class DirectoryLookupError(MailStoreError, LookupError):
    """A user directory query failed"""

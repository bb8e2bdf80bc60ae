"""
Error Taxonomy

Failures the link core distinguishes between. Expected, bounded
conditions (empty content, rate limiting) are recovered locally;
everything else travels to the job or resolution boundary as one of
these types.
"""

from typing import List, Optional


class LinklyError(Exception):
    """Base class for all link core errors."""


class LinkNotFound(LinklyError):
    """Unknown short code or link id. Terminal, never retried."""

    def __init__(self, identifier: str):
        super().__init__(f"Link not found: {identifier}")
        self.identifier = identifier


class CollectionNotFound(LinklyError):
    """Collection id does not exist or belongs to another owner."""

    def __init__(self, collection_id: str):
        super().__init__(f"Collection not found: {collection_id}")
        self.collection_id = collection_id


class DuplicateCollectionName(LinklyError):
    """Collection names are unique per owner."""


class InvalidDestination(LinklyError):
    """Destination address is not an http(s) URL."""


class DuplicateLink(LinklyError):
    """Owner already shortened this destination, or the short code is taken."""


class FetchUnavailable(LinklyError):
    """
    Destination could not be rendered.

    Not a job failure: the fetcher reports it as absent content and the
    analysis engine produces its fallback result.
    """


class AnalysisProviderError(LinklyError):
    """Base class for failures of the external text-analysis capability."""


class AnalysisProviderTransient(AnalysisProviderError):
    """Provider throttled the request; retried internally up to a bound."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class AnalysisProviderFatal(AnalysisProviderError):
    """Auth failure, bad request or other non-retryable provider failure."""


class AnalysisOutputError(AnalysisProviderFatal):
    """Provider answered, but the structured output could not be parsed."""

    def __init__(self, message: str, raw_output: str = ""):
        super().__init__(message)
        self.raw_output = raw_output


class PermanentJobError(LinklyError):
    """Job must fail now, without queue-level redelivery."""


class JobRedeliveryExhausted(LinklyError):
    """Queue-level retries used up; the job is FAILED-TERMINAL."""

    def __init__(self, job_id: str, attempts: int, last_error: str = ""):
        super().__init__(
            f"Job {job_id} failed after {attempts} attempts: {last_error}"
        )
        self.job_id = job_id
        self.attempts = attempts
        self.last_error = last_error


class MembershipInconsistency(LinklyError):
    """
    A bidirectional membership update applied on one side only.

    `link_side_ok` / `collection_side_ok` say which half committed.
    """

    def __init__(
        self,
        link_id: str,
        link_side_ok: bool,
        collection_side_ok: bool,
        errors: Optional[List[str]] = None,
    ):
        self.link_id = link_id
        self.link_side_ok = link_side_ok
        self.collection_side_ok = collection_side_ok
        self.errors = errors or []
        super().__init__(
            f"Membership of link {link_id} is inconsistent "
            f"(link side ok={link_side_ok}, collection side ok={collection_side_ok}): "
            f"{'; '.join(self.errors)}"
        )


class SystemCollectionMutation(LinklyError):
    """System collection membership is maintained by auto-filing only."""

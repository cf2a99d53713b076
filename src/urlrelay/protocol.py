"""The RetryPredicate protocol - the contract soft-failure checks fulfill."""

from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from .models import UpstreamResponse


class RetryPredicate(Protocol):
    """Decides whether an HTTP-successful answer should still be retried.

    Some upstreams shed load by answering 200 with an error payload. A
    predicate lets the relay treat that as a failed attempt. It always sees
    a materialized response, so ``response.body`` and ``response.json()``
    are available.
    """

    def __call__(self, response: "UpstreamResponse") -> bool:
        """Return True to discard this response and try again.

        Args:
            response: The upstream answer for the current attempt

        Returns:
            Whether another attempt should be made (if any remain)
        """
        ...

"""
Resolution of the starting stream position.
"""

import logging

from eventpoll._http import HttpRequest
from eventpoll._retry import MalformedResponseError, RetryingExecutor
from eventpoll._utils import CancellationToken
from eventpoll.stream._models import NOW, StreamPosition

logger = logging.getLogger(__name__)


class StreamPositionResolver:
    """
    Resolves a requested starting position into a concrete `StreamPosition`.

    Explicit tokens (including `0` and `"0"`, meaning "all available past
    events") are returned unchanged. `NOW` asks the server for its current
    position through the executor.

    Example:
        >>> resolver = StreamPositionResolver(executor, "https://api.box.com/2.0/events")
        >>> resolver.resolve()          # server's current position
        '1348790499819'
        >>> resolver.resolve("12345")   # explicit token, no network call
        '12345'
    """

    def __init__(self, executor: RetryingExecutor, events_url: str) -> None:
        assert executor is not None, "executor cannot be None."
        assert events_url, "events_url cannot be empty."

        self.executor = executor
        self.events_url = events_url

    def resolve(
        self,
        requested: StreamPosition = NOW,
        cancel_token: CancellationToken | None = None,
    ) -> StreamPosition:
        """
        Return `requested` unchanged, or the server's current position for `NOW`.

        Raises:
            MalformedResponseError: If the server response has no `next_stream_position`.
            MaxRetriesExceededError: If the request keeps failing transiently.
            requests.HTTPError: On a permanent HTTP failure.
        """
        if requested != NOW:
            return requested

        data = self.executor.execute_json(
            HttpRequest(
                method="GET",
                url=self.events_url,
                params={"stream_position": NOW},
                label="current-position",
            ),
            cancel_token=cancel_token,
        )

        position = data.get("next_stream_position")
        if position is None or position == "":
            raise MalformedResponseError("Current-position response without `next_stream_position`.")

        logger.info(f"StreamPositionResolver | Resolved '{NOW}' to stream position {position}")
        return position

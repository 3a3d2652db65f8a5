"""
State transition validation for video records.

Video lifecycle: PENDING → GENERATING → COMPLETED | FAILED → POSTED → ARCHIVED

INVARIANT: a video reaches POSTED only from COMPLETED. The orchestration
core is the only writer of status and never deletes a record.
"""

from typing import FrozenSet, Set, Tuple

from .errors import InvalidTransition
from .models import VideoStatus

# Legal video status transitions
_VIDEO_TRANSITIONS: Set[Tuple[VideoStatus, VideoStatus]] = {
    # Enqueueing a generation job (first submission or resubmission)
    (VideoStatus.PENDING, VideoStatus.PENDING),
    (VideoStatus.FAILED, VideoStatus.PENDING),
    (VideoStatus.COMPLETED, VideoStatus.PENDING),

    # A generation attempt starts (queue retries come back from FAILED,
    # reclaimed jobs find the video still GENERATING)
    (VideoStatus.PENDING, VideoStatus.GENERATING),
    (VideoStatus.FAILED, VideoStatus.GENERATING),
    (VideoStatus.GENERATING, VideoStatus.GENERATING),

    # Generation outcome
    (VideoStatus.GENERATING, VideoStatus.COMPLETED),
    (VideoStatus.GENERATING, VideoStatus.FAILED),
    # Chained publish enqueue failed after the artifact was recorded
    (VideoStatus.COMPLETED, VideoStatus.FAILED),

    # Publishing; a failed publish reverts to COMPLETED
    (VideoStatus.COMPLETED, VideoStatus.POSTED),
    (VideoStatus.COMPLETED, VideoStatus.COMPLETED),

    # Archival
    (VideoStatus.COMPLETED, VideoStatus.ARCHIVED),
    (VideoStatus.POSTED, VideoStatus.ARCHIVED),
}

# No automatic transition ever leaves these
FINAL_VIDEO_STATES: FrozenSet[VideoStatus] = frozenset({
    VideoStatus.POSTED,
    VideoStatus.ARCHIVED,
})


def can_transition_video(from_status: VideoStatus, to_status: VideoStatus) -> bool:
    return (VideoStatus(from_status), VideoStatus(to_status)) in _VIDEO_TRANSITIONS


def validate_video_transition(video_id: str, from_status: VideoStatus, to_status: VideoStatus) -> None:
    """
    Raise InvalidTransition unless from_status → to_status is legal.

    Args:
        video_id: Record being changed (for the error message)
        from_status: Current status
        to_status: Requested status
    """
    if not can_transition_video(from_status, to_status):
        raise InvalidTransition(video_id, VideoStatus(from_status).value, VideoStatus(to_status).value)

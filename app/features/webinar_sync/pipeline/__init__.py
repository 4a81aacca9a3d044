"""Record transformation stage of the sync pipeline."""

from .transformer import (  # noqa: F401
    parse_datetime,
    to_participant_row,
    to_registrant_row,
    to_webinar_row,
)

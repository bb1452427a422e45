"""
Tracking enumerations.

Values are the Kanghoo domain tags stored and returned over the API.
"""

import enum


class TripStatus(str, enum.Enum):
    """Trip status enumeration. Transitions only STARTED -> FINISHED."""
    STARTED = "iniciada"
    FINISHED = "finalizada"


class TripType(str, enum.Enum):
    """Trip direction."""
    OUTBOUND = "ida"  # Home -> school / excursion departure
    RETURN = "volta"  # School -> home / excursion return


class EventType(str, enum.Enum):
    """Child transition recorded during a trip."""
    BOARDING = "embarque"
    ALIGHTING = "desembarque"

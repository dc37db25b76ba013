from patient_merge.models.base import Base
from patient_merge.models.patient import Patient
from patient_merge.models.reservation import Reservation, ReservationStatus
from patient_merge.models.order import Order, Reorder
from patient_merge.models.messaging import FriendFieldValue, MessageLog
from patient_merge.models.tagging import PatientMark, PatientTag
from patient_merge.models.intake import Intake
from patient_merge.models.dedup_ignored import DedupIgnored
from patient_merge.models.merge_event import PatientMergeEvent

__all__ = [
    "Base",
    "Patient",
    "Reservation",
    "ReservationStatus",
    "Order",
    "Reorder",
    "MessageLog",
    "FriendFieldValue",
    "PatientTag",
    "PatientMark",
    "Intake",
    "DedupIgnored",
    "PatientMergeEvent",
]

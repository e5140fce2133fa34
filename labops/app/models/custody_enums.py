"""
Chain-of-custody enumerations.
"""

import enum


class CustodyEventType(str, enum.Enum):
    """Physical handoff events recorded for a case."""
    LAB_DEPARTURE = "LabDeparture"
    IN_TRANSIT = "InTransit"
    CLINIC_ARRIVAL = "ClinicArrival"
    PATIENT_HANDOFF = "PatientHandoff"
    EXCEPTION = "Exception"  # Corrections and incidents; events are never edited


class VerificationMethod(str, enum.Enum):
    """How a handoff was confirmed."""
    QR_SCAN = "QR_SCAN"
    SIGNATURE = "SIGNATURE"
    BARCODE = "BARCODE"
    PHOTO = "PHOTO"
    BIOMETRIC = "BIOMETRIC"
    CODE = "CODE"

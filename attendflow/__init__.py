"""
AttendFlow Attendance Flow Engine
=================================

An in-process Python engine for moving patient encounters through a care
facility: reception, triage, medical evaluation, observation or bed
regulation, and close-out.  Provides the encounter state machine, acuity
driven priority queues, the call / absence / recall protocol with its
examiner lock, a monotonic medication checklist, change notification for
independent stations, and an append-only, hash-chained audit log.

The engine does not assess clinical risk.  Acuity colors are operator input
recorded at triage; the engine only orders and routes on them.
"""

__version__ = "0.1.0"

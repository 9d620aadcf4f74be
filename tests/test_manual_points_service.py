from __future__ import annotations

import unittest
from datetime import date
from decimal import Decimal
from unittest.mock import patch

from sqlalchemy import select

from attendance_points.errors import CascadeTransactionFailure, ConsistencyConflict, PointNotEditable, PointNotFound
from attendance_points.models import AttendancePoint, AuditLog, ExpirationType, PointType
from attendance_points.services.manual_points import (
    create_manual_point,
    delete_manual_point,
    excuse_point,
    unexcuse_point,
    update_manual_point,
)

from db_support import add_employee, add_point, make_session_factory

AS_OF = date(2026, 4, 10)


class ManualPointsServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = make_session_factory()()
        add_employee(self.db, 1)

    def tearDown(self) -> None:
        self.db.close()

    def _reload(self, point_id: int) -> AttendancePoint | None:
        self.db.expire_all()
        return self.db.get(AttendancePoint, point_id)

    def _create(self, shift_date: date, point_type: PointType = PointType.TARDY, **kwargs):  # type: ignore[no-untyped-def]
        return create_manual_point(
            self.db,
            employee_id=1,
            shift_date=shift_date,
            point_type=point_type,
            as_of=AS_OF,
            created_by="hr-admin",
            **kwargs,
        )

    def test_create_inserts_manual_point_and_runs_cascade(self) -> None:
        existing = add_point(self.db, 1, date(2026, 1, 1))

        change = self._create(date(2026, 1, 10), minutes=7)

        point = change.point
        self.assertTrue(point.is_manual)
        self.assertEqual(point.created_by, "hr-admin")
        self.assertEqual(point.tardy_minutes, 7)
        self.assertTrue(point.violation_details.startswith("Manual Entry:"))
        self.assertEqual(
            [item.point_id for item in change.cascade.rolled_off],
            [existing.id, point.id],
        )
        self.assertEqual(point.gbro_applied_at, date(2026, 3, 11))
        audit = self.db.scalar(select(AuditLog).where(AuditLog.action == "MANUAL_POINT_CREATED"))
        self.assertEqual(audit.entity_id, str(point.id))
        self.assertEqual(audit.actor_id, "hr-admin")

    def test_create_rejects_taken_slot(self) -> None:
        add_point(self.db, 1, date(2026, 1, 1))
        with self.assertRaises(ConsistencyConflict):
            self._create(date(2026, 1, 1))

    def test_only_manual_points_can_be_updated(self) -> None:
        regular = add_point(self.db, 1, date(2026, 1, 1))
        with self.assertRaises(PointNotEditable):
            update_manual_point(self.db, regular.id, as_of=AS_OF, updated_by="hr-admin", notes="x")

    def test_moving_a_point_later_un_rolls_its_partner(self) -> None:
        partner = add_point(self.db, 1, date(2026, 1, 1))
        change = self._create(date(2026, 1, 10))
        self.assertTrue(self._reload(partner.id).is_expired)

        updated = update_manual_point(
            self.db,
            change.point_id,
            as_of=AS_OF,
            updated_by="hr-admin",
            shift_date=date(2026, 2, 20),
        )

        self.assertEqual([item.point_id for item in updated.cascade.predicted], [partner.id, change.point_id])
        partner = self._reload(partner.id)
        self.assertFalse(partner.is_expired)
        self.assertEqual(partner.expiration_type, ExpirationType.NONE)
        self.assertEqual(partner.gbro_expires_at, date(2026, 4, 21))
        moved = self._reload(change.point_id)
        self.assertEqual(moved.sro_expires_at, date(2026, 8, 20))
        self.assertIsNone(moved.gbro_applied_at)

    def test_reclassifying_as_ncns_drops_gbro_eligibility(self) -> None:
        partner = add_point(self.db, 1, date(2026, 1, 1))
        change = self._create(date(2026, 1, 10))

        update_manual_point(
            self.db,
            change.point_id,
            as_of=AS_OF,
            updated_by="hr-admin",
            point_type=PointType.WHOLE_DAY_ABSENCE,
            minutes=None,
            is_advised=False,
        )

        point = self._reload(change.point_id)
        self.assertFalse(point.eligible_for_gbro)
        self.assertFalse(point.is_expired)
        self.assertIsNone(point.gbro_expires_at)
        self.assertEqual(point.point_value, Decimal("1.00"))
        self.assertEqual(point.sro_expires_at, date(2027, 1, 10))
        self.assertIn("NCNS", point.violation_details)
        self.assertEqual(self._reload(partner.id).gbro_applied_at, date(2026, 3, 2))

    def test_delete_removes_point_and_replays_the_rest(self) -> None:
        partner = add_point(self.db, 1, date(2026, 1, 1))
        change = self._create(date(2026, 1, 10))

        deleted = delete_manual_point(self.db, change.point_id, as_of=AS_OF, deleted_by="hr-admin")

        self.assertIsNone(deleted.point)
        self.assertIsNone(self._reload(change.point_id))
        self.assertEqual(self._reload(partner.id).gbro_applied_at, date(2026, 3, 2))

    def test_delete_rejects_regular_points(self) -> None:
        regular = add_point(self.db, 1, date(2026, 1, 1))
        with self.assertRaises(PointNotEditable):
            delete_manual_point(self.db, regular.id, as_of=AS_OF, deleted_by="hr-admin")

    def test_excuse_and_unexcuse_replay_the_cascade(self) -> None:
        a = add_point(self.db, 1, date(2026, 1, 1))
        b = add_point(self.db, 1, date(2026, 1, 10))
        c = add_point(self.db, 1, date(2026, 1, 20))

        excused = excuse_point(self.db, a.id, reason="Medical certificate", excused_by="hr-admin", as_of=AS_OF)

        self.assertTrue(excused.point.is_excused)
        self.assertEqual(excused.point.excuse_reason, "Medical certificate")
        self.assertIsNotNone(excused.point.excused_at)
        self.assertEqual([item.point_id for item in excused.cascade.rolled_off], [b.id, c.id])

        restored = unexcuse_point(self.db, a.id, unexcused_by="hr-admin", as_of=AS_OF)

        self.assertFalse(restored.point.is_excused)
        self.assertEqual([item.point_id for item in restored.cascade.rolled_off], [a.id, b.id])
        self.assertEqual([item.point_id for item in restored.cascade.predicted], [c.id])
        self.assertFalse(self._reload(c.id).is_expired)

    def test_expired_points_cannot_be_excused(self) -> None:
        expired = add_point(
            self.db,
            1,
            date(2025, 1, 1),
            is_expired=True,
            expired_at=date(2025, 7, 1),
            expiration_type=ExpirationType.SRO,
        )
        with self.assertRaises(PointNotEditable):
            excuse_point(self.db, expired.id, reason="late paperwork", excused_by="hr-admin", as_of=AS_OF)

    def test_unexcuse_requires_an_excused_point(self) -> None:
        active = add_point(self.db, 1, date(2026, 1, 1))
        with self.assertRaises(PointNotEditable):
            unexcuse_point(self.db, active.id, unexcused_by="hr-admin", as_of=AS_OF)

    def test_failed_cascade_discards_the_new_point(self) -> None:
        with patch(
            "attendance_points.services.manual_points.replay_gbro_cascade",
            side_effect=CascadeTransactionFailure("lock timeout", details={"employee_id": 1}),
        ):
            with self.assertRaises(CascadeTransactionFailure):
                self._create(date(2026, 1, 10))

        self.db.expire_all()
        self.assertEqual(self.db.scalars(select(AttendancePoint)).all(), [])
        self.assertIsNone(self.db.scalar(select(AuditLog).where(AuditLog.action == "MANUAL_POINT_CREATED")))

    def test_failed_cascade_leaves_the_point_unexcused(self) -> None:
        point = add_point(self.db, 1, date(2026, 1, 1))

        with patch(
            "attendance_points.services.manual_points.replay_gbro_cascade",
            side_effect=CascadeTransactionFailure("lock timeout", details={"employee_id": 1}),
        ):
            with self.assertRaises(CascadeTransactionFailure):
                excuse_point(self.db, point.id, reason="Medical certificate", excused_by="hr-admin", as_of=AS_OF)

        point = self._reload(point.id)
        self.assertFalse(point.is_excused)
        self.assertIsNone(point.excused_by)

    def test_audit_rows_carry_the_employee(self) -> None:
        change = self._create(date(2026, 1, 10))

        audit = self.db.scalar(select(AuditLog).where(AuditLog.entity_id == str(change.point_id)))
        self.assertEqual(audit.employee_id, 1)

    def test_missing_point_is_reported(self) -> None:
        with self.assertRaises(PointNotFound):
            excuse_point(self.db, 999, reason="n/a", excused_by="hr-admin", as_of=AS_OF)


if __name__ == "__main__":
    unittest.main()

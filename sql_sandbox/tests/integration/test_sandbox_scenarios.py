"""End-to-end scenarios against a running Sandbox."""

from __future__ import annotations

import pytest

from sql_sandbox.application import Sandbox
from sql_sandbox.application.executor import ResultSet, RowsAffected
from sql_sandbox.domain.errors import (
    ConstraintViolationError,
    DuplicateKeyError,
    TransactionStateError,
    TriggerRecursionError,
    VetoError,
    WriteConflictError,
)
from sql_sandbox.domain.services import TriggerContext, sql_trigger
from sql_sandbox.domain.value_objects import TransactionState


def rows(sandbox: Sandbox, sql: str, transaction=None) -> list[tuple]:
    result = sandbox.execute(sql, transaction)
    assert isinstance(result, ResultSet)
    return result.tuples()


@pytest.fixture
def students(sandbox: Sandbox) -> Sandbox:
    sandbox.execute("CREATE TABLE Students (StudentID INTEGER PRIMARY KEY, Name VARCHAR(50), Age INTEGER)")
    sandbox.execute("INSERT INTO Students VALUES (1, 'Alice', 20)")
    return sandbox


@pytest.mark.integration
class TestTriggerScenarios:
    """Audit and guard triggers."""

    def test_update_audit_trigger(self, students: Sandbox) -> None:
        students.execute("CREATE TABLE StudentAudit (StudentID INTEGER, OldName VARCHAR(50), NewName VARCHAR(50))")
        students.create_trigger(
            "students_audit",
            "Students",
            "AFTER",
            ["UPDATE"],
            sql_trigger("INSERT INTO StudentAudit VALUES (OLD.StudentID, OLD.Name, NEW.Name)"),
        )

        students.execute("UPDATE Students SET Name = 'Alicia' WHERE StudentID = 1")

        result = students.execute("SELECT StudentID, OldName, NewName FROM StudentAudit")
        assert isinstance(result, ResultSet)
        assert result.as_dicts() == [{"StudentID": 1, "OldName": "Alice", "NewName": "Alicia"}]

    def test_insert_audit_writes_one_row_per_inserted_row(self, students: Sandbox) -> None:
        students.execute("CREATE TABLE audit_log (action TEXT, student_id INTEGER)")
        students.create_trigger(
            "students_insert_log",
            "Students",
            "AFTER",
            "INSERT",
            sql_trigger("INSERT INTO audit_log SELECT 'insert', StudentID FROM inserted"),
        )

        students.execute("INSERT INTO Students VALUES (2, 'Bob', 22), (3, 'Carol', 21)")

        assert rows(students, "SELECT action, student_id FROM audit_log ORDER BY student_id") == [
            ("insert", 2),
            ("insert", 3),
        ]

    def test_before_trigger_rewrites_new_row(self, students: Sandbox) -> None:
        def clamp_age(ctx: TriggerContext) -> None:
            assert ctx.new is not None
            if ctx.new["Age"] is not None and ctx.new["Age"] < 0:
                ctx.new["Age"] = 0

        students.create_trigger("clamp_age", "Students", "BEFORE", ["INSERT", "UPDATE"], clamp_age)

        students.execute("INSERT INTO Students VALUES (2, 'Bob', -5)")

        assert rows(students, "SELECT Age FROM Students WHERE StudentID = 2") == [(0,)]

    def test_veto_rolls_back_statement_only(self, students: Sandbox) -> None:
        students.create_trigger(
            "no_deletes", "Students", "BEFORE", "DELETE", lambda ctx: ctx.veto("students are never deleted")
        )
        txn = students.begin()
        students.execute("INSERT INTO Students VALUES (2, 'Bob', 22)", txn)

        with pytest.raises(VetoError) as exc_info:
            students.execute("DELETE FROM Students", txn)

        assert exc_info.value.trigger == "no_deletes"
        assert txn.is_active()
        students.commit(txn)
        assert rows(students, "SELECT StudentID FROM Students ORDER BY StudentID") == [(1,), (2,)]

    def test_vetoed_update_frees_the_row(self, students: Sandbox) -> None:
        def age_limit(ctx: TriggerContext) -> None:
            assert ctx.new is not None
            if ctx.new["Age"] > 100:
                ctx.veto("age over 100")

        students.create_trigger("age_limit", "Students", "AFTER", "UPDATE", age_limit)
        first = students.begin()
        second = students.begin()

        with pytest.raises(VetoError):
            students.execute("UPDATE Students SET Age = 150 WHERE StudentID = 1", first)

        assert first.is_active()
        students.execute("UPDATE Students SET Age = 25 WHERE StudentID = 1", second)
        students.commit(second)
        students.rollback(first)
        assert rows(students, "SELECT Age FROM Students WHERE StudentID = 1") == [(25,)]
        assert students.get_stats().held_intents == 0

    def test_runaway_trigger_aborts_transaction(self, sandbox: Sandbox) -> None:
        sandbox.execute("CREATE TABLE chain (id INTEGER PRIMARY KEY)")
        sandbox.create_trigger("extend", "chain", "AFTER", "INSERT", sql_trigger("INSERT INTO chain VALUES (NEW.id + 1)"))
        txn = sandbox.begin()

        with pytest.raises(TriggerRecursionError):
            sandbox.execute("INSERT INTO chain VALUES (1)", txn)

        assert txn.state == TransactionState.ABORTED
        assert rows(sandbox, "SELECT COUNT(*) AS n FROM chain") == [(0,)]


@pytest.mark.integration
class TestConcurrencyScenarios:
    """Two transactions touching the same rows."""

    def test_two_writers_on_same_row(self, students: Sandbox) -> None:
        first = students.begin()
        second = students.begin()
        students.execute("UPDATE Students SET Age = 21 WHERE StudentID = 1", first)

        with pytest.raises(WriteConflictError) as exc_info:
            students.execute("UPDATE Students SET Age = 30 WHERE StudentID = 1", second)

        assert exc_info.value.blocking_txn == first.txn_id
        assert second.state == TransactionState.ABORTED
        students.commit(first)
        assert rows(students, "SELECT Age FROM Students WHERE StudentID = 1") == [(21,)]

    def test_first_committer_wins(self, students: Sandbox) -> None:
        first = students.begin()
        second = students.begin()
        students.execute("UPDATE Students SET Age = 21 WHERE StudentID = 1", first)
        students.commit(first)

        with pytest.raises(WriteConflictError):
            students.execute("UPDATE Students SET Age = 30 WHERE StudentID = 1", second)

        assert rows(students, "SELECT Age FROM Students WHERE StudentID = 1") == [(21,)]

    def test_snapshot_reads_are_stable(self, students: Sandbox) -> None:
        reader = students.begin()
        assert rows(students, "SELECT COUNT(*) AS n FROM Students", reader) == [(1,)]

        students.execute("INSERT INTO Students VALUES (2, 'Bob', 22)")

        assert rows(students, "SELECT COUNT(*) AS n FROM Students", reader) == [(1,)]
        students.commit(reader)
        assert rows(students, "SELECT COUNT(*) AS n FROM Students") == [(2,)]

    def test_read_committed_sees_new_commits(self, students: Sandbox) -> None:
        reader = students.begin("READ_COMMITTED")
        assert rows(students, "SELECT COUNT(*) AS n FROM Students", reader) == [(1,)]

        students.execute("INSERT INTO Students VALUES (2, 'Bob', 22)")

        assert rows(students, "SELECT COUNT(*) AS n FROM Students", reader) == [(2,)]
        students.rollback(reader)


@pytest.mark.integration
class TestTransactionScenarios:
    """Statement atomicity, sessions and commit-time checks."""

    def test_merge_deletes_updates_and_inserts(self, sandbox: Sandbox) -> None:
        sandbox.execute_script(
            """
            CREATE TABLE roster (id INTEGER PRIMARY KEY, name TEXT);
            CREATE TABLE incoming (id INTEGER PRIMARY KEY, name TEXT);
            INSERT INTO roster VALUES (1, 'Alice'), (2, 'Bob');
            INSERT INTO incoming VALUES (2, 'Robert'), (3, 'Carol')
            """
        )

        result = sandbox.execute(
            "MERGE INTO roster r USING incoming i ON r.id = i.id "
            "WHEN MATCHED THEN UPDATE SET name = i.name "
            "WHEN NOT MATCHED BY TARGET THEN INSERT (id, name) VALUES (i.id, i.name) "
            "WHEN NOT MATCHED BY SOURCE THEN DELETE"
        )

        assert result == RowsAffected(3, "MERGE 3")
        assert rows(sandbox, "SELECT id, name FROM roster ORDER BY id") == [(2, "Robert"), (3, "Carol")]

    def test_failed_statement_keeps_earlier_work(self, students: Sandbox) -> None:
        txn = students.begin()
        students.execute("INSERT INTO Students VALUES (2, 'Bob', 22)", txn)

        with pytest.raises(DuplicateKeyError):
            students.execute("INSERT INTO Students VALUES (3, 'Carol', 21), (1, 'Again', 30)", txn)

        assert txn.is_active()
        students.commit(txn)
        assert rows(students, "SELECT StudentID FROM Students ORDER BY StudentID") == [(1,), (2,)]

    def test_read_own_write_before_commit(self, students: Sandbox) -> None:
        txn = students.begin()
        students.execute("INSERT INTO Students VALUES (2, 'Bob', 22)", txn)

        assert rows(students, "SELECT Name FROM Students WHERE StudentID = 2", txn) == [("Bob",)]
        assert rows(students, "SELECT Name FROM Students WHERE StudentID = 2") == []
        students.rollback(txn)

    def test_session_transaction_control(self, students: Sandbox) -> None:
        session = students.session()

        assert session.execute("BEGIN") == RowsAffected(0, "BEGIN")
        session.execute("INSERT INTO Students VALUES (2, 'Bob', 22)")
        assert rows(students, "SELECT COUNT(*) AS n FROM Students") == [(1,)]
        assert session.execute("COMMIT") == RowsAffected(0, "COMMIT")
        assert rows(students, "SELECT COUNT(*) AS n FROM Students") == [(2,)]

        session.execute("BEGIN")
        session.execute("DELETE FROM Students")
        session.execute("ROLLBACK")
        assert rows(students, "SELECT COUNT(*) AS n FROM Students") == [(2,)]

        with pytest.raises(TransactionStateError):
            session.execute("COMMIT")
        session.close()

    def test_session_leaves_transaction_after_conflict(self, students: Sandbox) -> None:
        blocker = students.begin()
        students.execute("UPDATE Students SET Age = 21 WHERE StudentID = 1", blocker)
        session = students.session()
        session.execute("BEGIN")

        with pytest.raises(WriteConflictError):
            session.execute("UPDATE Students SET Age = 30 WHERE StudentID = 1")

        assert not session.in_transaction
        students.rollback(blocker)
        session.close()

    def test_foreign_key_checked_at_commit(self, students: Sandbox) -> None:
        students.execute(
            "CREATE TABLE grades (StudentID INTEGER, grade INTEGER, "
            "FOREIGN KEY (StudentID) REFERENCES Students(StudentID))"
        )
        txn = students.begin()
        students.execute("INSERT INTO grades VALUES (9, 80)", txn)

        with pytest.raises(ConstraintViolationError):
            students.commit(txn)

        assert txn.state == TransactionState.ABORTED
        assert students.get_stats().aborted_transactions >= 1

    def test_stats(self, students: Sandbox) -> None:
        stats = students.get_stats()

        assert stats.started
        assert stats.tables == 1
        assert stats.active_transactions == 0
        assert stats.held_intents == 0
        assert stats.last_committed_seq >= 1

"""SQLAlchemy-backed store for test statuses and run history."""

import logging
from typing import Iterable, Iterator, Optional

from pydantic import ValidationError
from sqlalchemy import (
    JSON,
    BigInteger,
    Column,
    ForeignKey,
    Integer,
    String,
    create_engine,
    select,
    update,
)
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import declarative_base, sessionmaker

from .config import DEFAULT_DB_URL, RUN_QUERY_BATCH_SIZE
from .models import DeviceInfo, TestCase, TestCaseRun, TestRun, TestStatus

logger = logging.getLogger(__name__)

Base = declarative_base()


class StoreError(Exception):
    """Raised when a store operation fails."""

    pass


class StoreConflictError(StoreError):
    """Raised when a concurrent writer changed the record being updated."""

    pass


class StoreTimeoutError(StoreError):
    """Raised when the database times out or is temporarily unavailable."""

    pass


class StoreFailureError(StoreError):
    """Raised on any other database failure."""

    pass


class EntityNotFoundError(StoreError):
    """Raised when a test status disappeared."""

    pass


# Errors worth retrying inside an update loop
RETRYABLE_STORE_ERRORS = (StoreConflictError, StoreTimeoutError, StoreFailureError)


class TestStatusRow(Base):
    __tablename__ = "test_status"

    test_name = Column(String, primary_key=True)
    timestamp = Column(BigInteger, nullable=False, default=0)
    passing_count = Column(Integer, nullable=False, default=0)
    failing_count = Column(Integer, nullable=False, default=0)
    failing_test_cases = Column(JSON, nullable=False, default=list)


class TestRunRow(Base):
    __tablename__ = "test_run"

    run_id = Column(Integer, primary_key=True)
    test_name = Column(String, ForeignKey("test_status.test_name"), index=True, nullable=False)
    start_timestamp = Column(BigInteger, index=True, nullable=False)
    run_type = Column(String, nullable=False)
    test_case_ids = Column(JSON, nullable=False, default=list)


class TestCaseRunRow(Base):
    __tablename__ = "test_case_run"

    test_case_run_id = Column(Integer, primary_key=True)
    test_cases = Column(JSON, nullable=False, default=list)


class DeviceInfoRow(Base):
    __tablename__ = "device_info"

    id = Column(Integer, primary_key=True)
    run_id = Column(Integer, ForeignKey("test_run.run_id"), index=True, nullable=False)
    build_id = Column(String, nullable=False)


class SubscriberRow(Base):
    __tablename__ = "subscriber"

    id = Column(Integer, primary_key=True)
    test_name = Column(String, index=True, nullable=False)
    email = Column(String, nullable=False)


def _status_from_row(row: TestStatusRow) -> TestStatus:
    return TestStatus(
        test_name=row.test_name,
        timestamp=row.timestamp,
        passing_count=row.passing_count,
        failing_count=row.failing_count,
        failing_test_cases=row.failing_test_cases or [],
    )


def _status_values(status: TestStatus) -> dict:
    return {
        "timestamp": status.timestamp,
        "passing_count": status.passing_count,
        "failing_count": status.failing_count,
        "failing_test_cases": [ref.model_dump() for ref in status.failing_test_cases],
    }


def _wrap_db_error(e: DBAPIError | PoolTimeoutError) -> StoreError:
    if isinstance(e, (OperationalError, PoolTimeoutError)):
        return StoreTimeoutError(f"Database unavailable: {e}")
    return StoreFailureError(f"Database error: {e}")


class StatusTransaction:
    """A read-check-write transaction on a single test status.

    ``put`` only succeeds if the stored timestamp still equals the one seen by
    ``get``; otherwise a concurrent writer got there first and
    ``StoreConflictError`` is raised.
    """

    def __init__(self, session):
        self.session = session
        self._versions: dict[str, int] = {}
        self.session.begin()

    @property
    def is_active(self) -> bool:
        return self.session.in_transaction()

    def get(self, test_name: str) -> TestStatus:
        """Read a test status inside the transaction.

        Raises:
            EntityNotFoundError: If no status exists for test_name
            ValidationError: If the stored row is malformed
        """
        try:
            row = self.session.get(TestStatusRow, test_name)
        except (DBAPIError, PoolTimeoutError) as e:
            raise _wrap_db_error(e)
        if row is None:
            raise EntityNotFoundError(f"Test status not found: {test_name}")
        self._versions[test_name] = row.timestamp
        return _status_from_row(row)

    def put(self, status: TestStatus):
        """Write a status read earlier by ``get`` in this transaction."""
        if status.test_name not in self._versions:
            raise StoreError(f"Test status was not read in this transaction: {status.test_name}")

        stmt = (
            update(TestStatusRow)
            .where(TestStatusRow.test_name == status.test_name)
            .where(TestStatusRow.timestamp == self._versions[status.test_name])
            .values(**_status_values(status))
            .execution_options(synchronize_session=False)
        )
        try:
            result = self.session.execute(stmt)
        except (DBAPIError, PoolTimeoutError) as e:
            raise _wrap_db_error(e)
        if result.rowcount != 1:
            raise StoreConflictError(f"Concurrent update of test status: {status.test_name}")

    def commit(self):
        try:
            self.session.commit()
        except (DBAPIError, PoolTimeoutError) as e:
            raise _wrap_db_error(e)
        finally:
            self.session.close()

    def rollback(self):
        try:
            self.session.rollback()
        finally:
            self.session.close()


class StatusStore:
    """Store of test statuses, runs, test case runs, devices and subscribers."""

    def __init__(self, db_url: str = DEFAULT_DB_URL):
        self.db_url = db_url
        self.engine = create_engine(db_url)
        self.Session = sessionmaker(bind=self.engine, autobegin=False)
        Base.metadata.create_all(self.engine)
        logger.debug("Store connected: %s", db_url)

    def dispose(self):
        self.engine.dispose()

    def begin_transaction(self) -> StatusTransaction:
        try:
            return StatusTransaction(self.Session())
        except (DBAPIError, PoolTimeoutError) as e:
            raise _wrap_db_error(e)

    # Queries

    def iter_test_statuses(self) -> Iterator[TestStatus]:
        """Yield every test status, skipping malformed rows.

        Statuses are read up front so no read stays open while callers write.
        """
        statuses = []
        with self.Session() as session, session.begin():
            for row in session.scalars(select(TestStatusRow).order_by(TestStatusRow.test_name)):
                try:
                    statuses.append(_status_from_row(row))
                except ValidationError as e:
                    logger.warning("Corrupted test status: %s (%s)", row.test_name, e)
        yield from statuses

    def get_test_status(self, test_name: str) -> Optional[TestStatus]:
        with self.Session() as session, session.begin():
            row = session.get(TestStatusRow, test_name)
            return _status_from_row(row) if row is not None else None

    def runs_for_test(
        self,
        test_name: str,
        since_exclusive: int,
        run_types: Iterable[str],
    ) -> Iterator[TestRun]:
        """Yield runs of a test newer than since_exclusive, newest first.

        Rows are streamed in batches; malformed runs are logged and skipped.
        """
        stmt = (
            select(TestRunRow)
            .where(TestRunRow.test_name == test_name)
            .where(TestRunRow.start_timestamp > since_exclusive)
            .where(TestRunRow.run_type.in_(list(run_types)))
            .order_by(TestRunRow.start_timestamp.desc(), TestRunRow.run_id.desc())
            .execution_options(yield_per=RUN_QUERY_BATCH_SIZE)
        )
        with self.Session() as session, session.begin():
            for row in session.scalars(stmt):
                try:
                    yield TestRun(
                        run_id=row.run_id,
                        test_name=row.test_name,
                        start_timestamp=row.start_timestamp,
                        run_type=row.run_type,
                        test_case_ids=row.test_case_ids or [],
                    )
                except ValidationError as e:
                    logger.warning("Invalid test run detected: %s (%s)", row.run_id, e)

    def batch_get_test_case_runs(self, ids: Iterable[int]) -> dict[int, TestCaseRun]:
        """Fetch test case runs by id. Missing or malformed ids are left out."""
        ids = set(ids)
        if not ids:
            return {}

        result = {}
        with self.Session() as session, session.begin():
            rows = session.scalars(
                select(TestCaseRunRow).where(TestCaseRunRow.test_case_run_id.in_(ids))
            ).all()
            for row in rows:
                try:
                    result[row.test_case_run_id] = TestCaseRun(
                        test_case_run_id=row.test_case_run_id,
                        test_cases=row.test_cases or [],
                    )
                except ValidationError as e:
                    logger.warning("Invalid test case run: %s (%s)", row.test_case_run_id, e)
        return result

    def devices_for_run(self, run_id: int) -> list[DeviceInfo]:
        with self.Session() as session, session.begin():
            rows = session.scalars(select(DeviceInfoRow).where(DeviceInfoRow.run_id == run_id)).all()
            return [DeviceInfo(run_id=row.run_id, build_id=row.build_id) for row in rows]

    def subscriber_emails(self, test_name: str) -> list[str]:
        with self.Session() as session, session.begin():
            return list(
                session.scalars(
                    select(SubscriberRow.email)
                    .where(SubscriberRow.test_name == test_name)
                    .order_by(SubscriberRow.id)
                )
            )

    # Ingestion

    def add_test_status(self, status: TestStatus):
        with self.Session() as session, session.begin():
            session.add(TestStatusRow(test_name=status.test_name, **_status_values(status)))

    def add_run(
        self,
        test_name: str,
        start_timestamp: int,
        test_case_batches: list[list[TestCase]],
        build_ids: Iterable[str] = (),
        run_type: str = "postsubmit",
    ) -> TestRun:
        """Record a run with its test case batches and participating devices."""
        with self.Session() as session, session.begin():
            case_rows = [
                TestCaseRunRow(test_cases=[case.model_dump(mode="json") for case in batch])
                for batch in test_case_batches
            ]
            session.add_all(case_rows)
            session.flush()

            run_row = TestRunRow(
                test_name=test_name,
                start_timestamp=start_timestamp,
                run_type=run_type,
                test_case_ids=[row.test_case_run_id for row in case_rows],
            )
            session.add(run_row)
            session.flush()

            session.add_all(DeviceInfoRow(run_id=run_row.run_id, build_id=b) for b in build_ids)

            return TestRun(
                run_id=run_row.run_id,
                test_name=test_name,
                start_timestamp=start_timestamp,
                run_type=run_type,
                test_case_ids=run_row.test_case_ids,
            )

    def add_subscriber(self, test_name: str, email: str):
        with self.Session() as session, session.begin():
            session.add(SubscriberRow(test_name=test_name, email=email))

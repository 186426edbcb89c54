"""End-to-end tests for the SQL snapshot repository on PostgreSQL.

The database comes from ``DATABASE__URL`` when it is set, otherwise a
Testcontainers PostgreSQL instance is started. The whole module is skipped
unless ``DATABASE__ENABLE_POSTGRES_TESTS`` is true.
"""

import asyncio

import pytest
from sqlalchemy import delete

from agentloop_ai.agent_core.repos import SqlWorkflowSnapshotRepository, create_all, create_engine, create_sessionmaker
from agentloop_ai.agent_core.repos.models import WorkflowSnapshotRow
from agentloop_ai.agent_core.schemas.domain import StepResult, WorkflowRunState
from test.settings import test_settings

WF = "agent-loop"

pytestmark = pytest.mark.skipif(
    not test_settings.database.enable_postgres_tests,
    reason="PostgreSQL tests disabled (set DATABASE__ENABLE_POSTGRES_TESTS=true)",
)


@pytest.fixture(scope="module")
def postgres_url(test_config):
    if test_config.database.url:
        yield test_config.database.url
        return

    from testcontainers.postgres import PostgresContainer

    container = PostgresContainer("postgres:16-alpine", driver="asyncpg")
    container.start()
    try:
        yield container.get_connection_url()
    finally:
        container.stop()


@pytest.fixture
async def db_engine(postgres_url: str):
    engine = create_engine(postgres_url)
    await create_all(engine)
    async with engine.begin() as conn:
        await conn.execute(delete(WorkflowSnapshotRow))
    yield engine
    await engine.dispose()


@pytest.fixture
def repo(db_engine) -> SqlWorkflowSnapshotRepository:
    return SqlWorkflowSnapshotRepository(create_sessionmaker(db_engine))


class TestSnapshotRepositoryPostgres:
    @pytest.mark.asyncio
    async def test_round_trip_keeps_nested_documents(self, repo: SqlWorkflowSnapshotRepository) -> None:
        snap = WorkflowRunState(
            run_id="r1",
            status="suspended",
            value={"messages": [{"role": "user", "content": [{"type": "text", "text": "héllo 'quoted' & co"}]}]},
            suspended_paths={"iteration-1": {"toolCallId": "c1", "payload": {"question": "Proceed?"}}},
        )
        await repo.persist_workflow_snapshot(workflow_name=WF, run_id="r1", snapshot=snap, resource_id="alice")

        assert await repo.load_workflow_snapshot(workflow_name=WF, run_id="r1") == snap

    @pytest.mark.asyncio
    async def test_concurrent_step_writes_are_merged(self, repo: SqlWorkflowSnapshotRepository) -> None:
        await repo.persist_workflow_snapshot(workflow_name=WF, run_id="r1", snapshot=WorkflowRunState(run_id="r1"))

        await asyncio.gather(
            *(
                repo.update_workflow_results(
                    workflow_name=WF, run_id="r1", step_id=f"step-{i}", result=StepResult(output=i)
                )
                for i in range(16)
            )
        )

        loaded = await repo.load_workflow_snapshot(workflow_name=WF, run_id="r1")
        assert {k: v["output"] for k, v in loaded.context.items()} == {f"step-{i}": i for i in range(16)}

    @pytest.mark.asyncio
    async def test_concurrent_first_writes_create_one_row(self, repo: SqlWorkflowSnapshotRepository) -> None:
        await asyncio.gather(
            repo.update_workflow_results(workflow_name=WF, run_id="r1", step_id="a", result=StepResult(output=1)),
            repo.update_workflow_results(workflow_name=WF, run_id="r1", step_id="b", result=StepResult(output=2)),
        )

        page = await repo.list_workflow_runs(workflow_name=WF)
        assert page.total == 1
        assert sorted(page.runs[0].snapshot.context) == ["a", "b"]

    @pytest.mark.asyncio
    async def test_status_filter_reads_json_document(self, repo: SqlWorkflowSnapshotRepository) -> None:
        for i in range(4):
            await repo.persist_workflow_snapshot(
                workflow_name=WF,
                run_id=f"r{i}",
                snapshot=WorkflowRunState(run_id=f"r{i}", status="completed" if i % 2 else "running"),
            )

        page = await repo.list_workflow_runs(status="completed")
        assert [r.run_id for r in page.runs] == ["r3", "r1"]

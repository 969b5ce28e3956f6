import logging

import pytest

from pgpair.exceptions import ConnectionFailed, ConvergenceTimeout, ReplicationError
from pgpair.replication_tester import ReplicationTester, ident
from pgpair.result import StepStatus

logger = logging.getLogger(__name__)


def make_tester(cluster, instances, ssh_factory=None, **kwargs):
    a, b = instances
    return ReplicationTester(
        a,
        b,
        ssh_factory=ssh_factory,
        restart_timeout=0,
        sync_timeout=0,
        poll_interval=0,
        connect=cluster.connect,
        sleep=lambda _: None,
        logger=logger,
        **kwargs
    )


def ddl_statements(server):
    return [sql for _, sql, _ in server.statements
            if sql.startswith(("CREATE", "DROP", "ALTER SYSTEM"))]


def test_full_run_converges(cluster, instances, ssh_factory):
    server_a = cluster.add(instances[0])
    server_b = cluster.add(instances[1])

    results = make_tester(cluster, instances, ssh_factory).run()

    assert all(r.ok for r in results)
    assert len(server_a.rows) == len(server_b.rows) == 5
    assert sorted(server_a.rows) == sorted(server_b.rows)
    # nothing needed a restart
    assert ssh_factory.clients == []
    assert all(conn.closed for conn in cluster.connections)


def test_seed_rows_reach_second_instance(cluster, instances):
    server_a = cluster.add(instances[0])
    server_b = cluster.add(instances[1])
    tester = make_tester(cluster, instances)

    tester.setup_test_data(instances[0])
    tester.setup_bidirectional_replication()
    result = tester.verify_replication(*instances)

    assert server_a.rows == [
        "Test data 1 from 192.168.90.6:5432",
        "Test data 2 from 192.168.90.6:5432",
        "Test data 3 from 192.168.90.6:5432",
    ]
    assert tester.snapshot(instances[1]) == (3, "Test data 3 from 192.168.90.6:5432")
    assert result.detail == "3 rows on both sides"
    assert server_b.rows == server_a.rows


def test_unreachable_instance_aborts_before_setup(cluster, instances, ssh_factory):
    server_a = cluster.add(instances[0])
    server_b = cluster.add(instances[1], reachable=False)

    with pytest.raises(ConnectionFailed, match="192.168.90.7:5433"):
        make_tester(cluster, instances, ssh_factory).run()

    assert ddl_statements(server_a) == []
    assert server_b.statements == []


def test_wal_level_forces_exactly_one_restart(cluster, instances, ssh_factory):
    server_a = cluster.add(instances[0])
    server_b = cluster.add(instances[1], wal_level="replica")

    results = make_tester(cluster, instances, ssh_factory).run()

    assert server_a.restarts == 0
    assert server_b.restarts == 1
    assert server_b.wal_level == "logical"
    assert [c.hostname for c in ssh_factory.clients] == ["192.168.90.7"]
    assert ssh_factory.clients[0].commands == ["systemctl restart postgresql@15-second"]
    wal_steps = [r for r in results if r.step == "configure_wal_level"]
    assert [r.status for r in wal_steps] == [StepStatus.UNCHANGED, StepStatus.CHANGED]


def test_restart_without_ssh_is_an_error(cluster, instances):
    cluster.add(instances[0], wal_level="replica")
    cluster.add(instances[1])

    with pytest.raises(ReplicationError, match="no SSH access"):
        make_tester(cluster, instances).configure_wal_level(instances[0])


def test_restart_timeout(cluster, instances):
    server = cluster.add(instances[0], wal_level="replica")
    cluster.add(instances[1])

    def factory(hostname):
        class DownAfterRestart:
            def __enter__(self):
                return self

            def __exit__(self, *exc):
                return False

            def execute_sudo(self, command, timeout=None, check=True):
                server.reachable = False
                return 0, "", ""
        return DownAfterRestart()

    with pytest.raises(ConvergenceTimeout, match="Timeout waiting for PostgreSQL to restart on 192.168.90.6:5432"):
        make_tester(cluster, instances, factory).configure_wal_level(instances[0])


def test_mismatch_is_fatal(cluster, instances):
    cluster.add(instances[0])
    cluster.add(instances[1])
    cluster.replicate = False
    tester = make_tester(cluster, instances)

    tester.setup_test_data(instances[0])
    tester.setup_bidirectional_replication()

    with pytest.raises(ReplicationError, match="Data mismatch"):
        tester.verify_replication(*instances)


def test_equal_counts_without_both_inserts_is_not_convergence(cluster, instances):
    cluster.add(instances[0])
    cluster.add(instances[1])
    tester = make_tester(cluster, instances)
    tester.setup_test_data(instances[0])
    tester.setup_bidirectional_replication()
    tester.verify_replication(*instances)

    # each side only sees its own insert: 4 vs 4 rows
    cluster.replicate = False
    with pytest.raises(ReplicationError, match="expected 5"):
        tester.test_bidirectional_replication()


def test_subscriptions_carry_no_password(cluster, instances):
    server_a = cluster.add(instances[0])
    server_b = cluster.add(instances[1])

    make_tester(cluster, instances, password="s3cret").run()

    subscriptions = [
        (sql, params) for server in (server_a, server_b)
        for _, sql, params in server.statements if sql.startswith("CREATE SUBSCRIPTION")
    ]
    assert len(subscriptions) == 2
    for sql, params in subscriptions:
        assert "s3cret" not in params[0]
        assert "password" not in params[0]
        assert "origin = none" in sql


def test_passfile_is_referenced(cluster, instances):
    server_a = cluster.add(instances[0])
    cluster.add(instances[1])

    tester = make_tester(cluster, instances, passfile="/var/lib/postgresql/.pgpass")
    tester.run()

    reverse = [params[0] for _, sql, params in server_a.statements if sql.startswith("CREATE SUBSCRIPTION")]
    assert reverse == [
        "host=192.168.90.7 port=5433 user=postgres dbname=replication_test "
        "passfile=/var/lib/postgresql/.pgpass"
    ]


def test_reverse_direction_does_not_copy(cluster, instances):
    server_a = cluster.add(instances[0])
    server_b = cluster.add(instances[1])

    make_tester(cluster, instances).setup_bidirectional_replication()

    forward = [sql for _, sql, _ in server_b.statements if sql.startswith("CREATE SUBSCRIPTION")]
    reverse = [sql for _, sql, _ in server_a.statements if sql.startswith("CREATE SUBSCRIPTION")]
    assert "sub_test CONNECTION" in forward[0] and "copy_data = true" in forward[0]
    assert "sub_test_reverse CONNECTION" in reverse[0] and "copy_data = false" in reverse[0]
    assert "PUBLICATION pub_test_reverse" in reverse[0]


def test_old_servers_skip_origin_filter(cluster, instances, caplog):
    cluster.add(instances[0], version=150006)
    server_b = cluster.add(instances[1], version=150006)

    with caplog.at_level(logging.WARNING, logger=__name__):
        make_tester(cluster, instances).setup_bidirectional_replication()

    create = [sql for _, sql, _ in server_b.statements if sql.startswith("CREATE SUBSCRIPTION")]
    assert "origin" not in create[0]
    assert "predates PostgreSQL 16" in caplog.text


def test_rerun_tears_down_previous_objects(cluster, instances):
    server_a = cluster.add(instances[0])
    server_b = cluster.add(instances[1])

    make_tester(cluster, instances).run()
    server_a.statements.clear()
    server_b.statements.clear()
    results = make_tester(cluster, instances).run()

    teardown = next(r for r in results if r.step == "teardown")
    assert teardown.status is StepStatus.CHANGED
    assert ("replication_test", "DROP SUBSCRIPTION IF EXISTS sub_test;", None) in server_b.statements
    assert ("replication_test", "DROP SUBSCRIPTION IF EXISTS sub_test_reverse;", None) in server_a.statements
    assert ("postgres", "DROP DATABASE IF EXISTS replication_test WITH (FORCE);", None) in server_a.statements
    assert len(server_a.rows) == len(server_b.rows) == 5


def test_sequences_are_interleaved(cluster, instances):
    server_a = cluster.add(instances[0])
    server_b = cluster.add(instances[1])

    make_tester(cluster, instances).run()

    assert any("INCREMENT BY 2 RESTART WITH 1" in sql for _, sql, _ in server_a.statements)
    assert any("INCREMENT BY 2 RESTART WITH 2" in sql for _, sql, _ in server_b.statements)


def test_status_report(cluster, instances):
    cluster.add(instances[0])
    cluster.add(instances[1], reachable=False)
    tester = make_tester(cluster, instances)

    report = tester.status()

    assert report["192.168.90.6:5432"]["wal_level"] == "logical"
    assert report["192.168.90.6:5432"]["subscriptions"] == []
    assert report["192.168.90.7:5433"] == {"role": "second", "reachable": False}


def test_ident_rejects_unsafe_names():
    assert ident("pub_test_reverse") == "pub_test_reverse"
    with pytest.raises(ValueError):
        ident("pub; DROP TABLE x")


def test_run_warns_up_front_when_origin_filter_is_missing(cluster, instances, caplog):
    cluster.add(instances[0], version=150006)
    server_b = cluster.add(instances[1])

    with caplog.at_level(logging.WARNING, logger=__name__):
        make_tester(cluster, instances).run()

    upfront = [r.getMessage() for r in caplog.records if "expected to fail" in r.getMessage()]
    assert upfront == [
        "PostgreSQL older than 16 on 192.168.90.6:5432: bidirectional replication will loop "
        "changes back to their origin and this test is expected to fail with a data mismatch"
    ]
    # only the reverse subscription, created on the old server, lacks the filter
    created = [sql for _, sql, _ in server_b.statements if sql.startswith("CREATE SUBSCRIPTION")]
    assert "origin = none" in created[0]


def test_run_has_no_origin_warning_on_current_servers(cluster, instances, caplog):
    cluster.add(instances[0])
    cluster.add(instances[1])

    with caplog.at_level(logging.WARNING, logger=__name__):
        make_tester(cluster, instances).run()

    assert "expected to fail" not in caplog.text
    assert "predates PostgreSQL 16" not in caplog.text

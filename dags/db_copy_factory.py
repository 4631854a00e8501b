from __future__ import annotations

import json
import logging
from dataclasses import asdict
from typing import Any, Dict

import pendulum
import psycopg2

from airflow.decorators import dag, task
from airflow.hooks.base import BaseHook
from airflow.models import Variable
from airflow.exceptions import AirflowFailException

from db_copy.CopyConfig import CopyConfig, configs_from_catalog, load_catalog
from db_copy.alerts import format_failure_report, send_discord_alert
from db_copy.orchestrator import SyncOrchestrator
from db_copy.timestamp_store import TimestampStore

log = logging.getLogger(__name__)

# ------------------------ Helpers ------------------------
def _json_sanitize(value: Any) -> Any:
    """Ensure value is JSON-serializable (round-trip via dumps/loads)."""
    return json.loads(json.dumps(value, default=str))


def _connect(conn_id: str):
    c = BaseHook.get_connection(conn_id)
    return psycopg2.connect(
        host=c.host,
        port=c.port or 5432,
        dbname=c.schema,
        user=c.login,
        password=c.password,
        application_name="db_copy",
    )


def _token_variable_names(cfg: CopyConfig):
    return (f"DBCOPY_TOKENS_SOURCE__{cfg.pair_key}", f"DBCOPY_TOKENS_TARGET__{cfg.pair_key}")


def _build_store(cfg: CopyConfig) -> TimestampStore:
    source_var, target_var = _token_variable_names(cfg)

    def _persist(source_text: str, target_text: str) -> None:
        Variable.set(source_var, source_text)
        Variable.set(target_var, target_text)

    store = TimestampStore(on_flush=_persist)
    store.load(Variable.get(source_var, default_var=""), Variable.get(target_var, default_var=""))
    return store


def _cfg_from_dict(d: Dict[str, Any]) -> CopyConfig:
    d = dict(d)
    for key in ("tables_to_include", "tables_to_exclude", "fields_to_exclude"):
        d[key] = tuple(d.get(key) or ())
    return CopyConfig(**d)


# ------------------------ DAG creation helpers ------------------------
def _build_pair_dag(cfg: CopyConfig):
    dag_id = f"db_copy__{cfg.pair_key}"

    tcfg: Dict[str, Any] = _json_sanitize(asdict(cfg))

    @dag(
        dag_id=dag_id,
        schedule=None,
        start_date=pendulum.datetime(2025, 8, 18, tz="UTC"),
        catchup=False,
        max_active_runs=1,
        tags=["db_copy", cfg.source_conn_id, cfg.target_conn_id],
        description=f"Copy working subset {cfg.source_conn_id} → {cfg.target_conn_id}",
    )
    def copy_dag():

        @task
        def copy_tables() -> Dict[str, Any]:
            cfg_obj = _cfg_from_dict(tcfg)
            store = _build_store(cfg_obj)
            orch = SyncOrchestrator(
                cfg_obj,
                store,
                connect_source=lambda: _connect(cfg_obj.source_conn_id),
                connect_target=lambda: _connect(cfg_obj.target_conn_id),
            )
            summaries = orch.run_all()
            report = format_failure_report(cfg_obj.pair_key, orch.tables())
            result = {
                "stages": [s.as_dict() for s in summaries],
                "tables": orch.registry.counts(),
                "failure_report": report,
            }
            log.info("Copy result for %s: %s", cfg_obj.pair_key, result)
            return _json_sanitize(result)

        @task(do_xcom_push=False)
        def alerting(result: Dict[str, Any]) -> None:
            report = result.get("failure_report")
            if not report:
                log.info("All tables committed; no alerting.")
                return
            send_discord_alert(Variable.get("DISCORD_WEBHOOK", default_var=""), report)
            raise AirflowFailException(f"Some tables failed to copy: {result.get('tables')}")

        alerting(copy_tables())

    return copy_dag()


# ------------------------ Generate all DAGs from catalog ------------------------
_catalog = load_catalog(Variable.get("DBCOPY_CONFIG_PATH", default_var="/opt/airflow/dags/db_copy_catalog.json").strip())
for _cfg in configs_from_catalog(_catalog):
    dag_obj = _build_pair_dag(_cfg)
    globals()[dag_obj.dag_id] = dag_obj

"""BigQuery loader for BridgeScore call and score-history exports."""

from pathlib import Path
from typing import List, Optional

from google.cloud import bigquery
from google.cloud.exceptions import NotFound
from rich.console import Console

from .config import Settings

console = Console()


CALLS_SCHEMA = [
    bigquery.SchemaField("id", "STRING", mode="REQUIRED", description="Call identifier"),
    bigquery.SchemaField("org_id", "STRING", mode="NULLABLE"),
    bigquery.SchemaField("user_id", "STRING", mode="NULLABLE"),
    bigquery.SchemaField("score_total", "INTEGER", mode="REQUIRED"),
    bigquery.SchemaField("score_breakdown", "JSON", mode="REQUIRED", description="Keyed step scores plus total"),
    bigquery.SchemaField("rule_version_id", "STRING", mode="NULLABLE"),
    bigquery.SchemaField("framework_version", "STRING", mode="NULLABLE"),
    bigquery.SchemaField("created_at", "TIMESTAMP", mode="REQUIRED"),
    bigquery.SchemaField("updated_at", "TIMESTAMP", mode="REQUIRED"),
]

HISTORY_SCHEMA = [
    bigquery.SchemaField("id", "STRING", mode="REQUIRED", description="History entry identifier"),
    bigquery.SchemaField("call_id", "STRING", mode="REQUIRED"),
    bigquery.SchemaField("rule_version_id", "STRING", mode="REQUIRED"),
    bigquery.SchemaField("framework_version", "STRING", mode="REQUIRED"),
    bigquery.SchemaField("score_total", "INTEGER", mode="REQUIRED"),
    bigquery.SchemaField("score_breakdown", "JSON", mode="REQUIRED", description="Snapshot of the breakdown"),
    bigquery.SchemaField("created_at", "TIMESTAMP", mode="REQUIRED"),
]


class BigQueryLoader:
    """Loads JSONL exports of calls and history entries into BigQuery"""

    def __init__(self, settings: Settings, client: Optional[bigquery.Client] = None):
        if not settings.bq_project_id and client is None:
            raise ValueError("BQ_PROJECT_ID is not set")

        self.project_id = settings.bq_project_id or client.project
        self.dataset_name = settings.bq_dataset
        self.calls_table = settings.bq_calls_table
        self.history_table = settings.bq_history_table
        self.client = client or bigquery.Client(project=self.project_id)

    def table_id(self, table_name: str) -> str:
        return f"{self.project_id}.{self.dataset_name}.{table_name}"

    def create_dataset_if_not_exists(self) -> None:
        dataset_id = f"{self.project_id}.{self.dataset_name}"

        try:
            self.client.get_dataset(dataset_id)
        except NotFound:
            dataset = bigquery.Dataset(dataset_id)
            dataset.location = "US"
            dataset.description = "BridgeScore call scores and score history"
            self.client.create_dataset(dataset, timeout=30)
            console.print(f"[green]Created dataset {self.dataset_name}[/green]")

    def create_table_if_not_exists(self, table_name: str, schema: List[bigquery.SchemaField]) -> None:
        table_id = self.table_id(table_name)

        try:
            self.client.get_table(table_id)
            return
        except NotFound:
            pass

        table = bigquery.Table(table_id, schema=schema)
        self.client.create_table(table, timeout=30)
        console.print(f"[green]Created table {table_name}[/green]")

    def load_jsonl(self, jsonl_path: Path, table_name: str, schema: List[bigquery.SchemaField],
                   write_disposition: str = "WRITE_APPEND") -> int:
        """
        Load a JSONL file into a table

        Args:
            jsonl_path: Path to JSONL file
            table_name: Destination table in the configured dataset
            schema: Schema used when the table has to be created
            write_disposition: WRITE_APPEND, WRITE_TRUNCATE or WRITE_EMPTY

        Returns:
            Number of rows loaded
        """
        if not jsonl_path.exists():
            console.print(f"[red]JSONL file not found: {jsonl_path}[/red]")
            return 0

        self.create_dataset_if_not_exists()
        self.create_table_if_not_exists(table_name, schema)

        table_id = self.table_id(table_name)
        job_config = bigquery.LoadJobConfig(
            source_format=bigquery.SourceFormat.NEWLINE_DELIMITED_JSON,
            autodetect=False,
            write_disposition=write_disposition,
        )

        console.print(f"[blue]Loading data from {jsonl_path} to {table_id}[/blue]")
        with open(jsonl_path, "rb") as source_file:
            job = self.client.load_table_from_file(source_file, table_id, job_config=job_config)

        job.result()

        if job.errors:
            console.print(f"[red]Job completed with errors: {job.errors}[/red]")
            return 0

        console.print(f"[green]Successfully loaded {job.output_rows} rows to {table_id}[/green]")
        return job.output_rows

    def upload_calls(self, jsonl_path: Path, write_disposition: str = "WRITE_APPEND") -> int:
        return self.load_jsonl(jsonl_path, self.calls_table, CALLS_SCHEMA, write_disposition)

    def upload_history(self, jsonl_path: Path) -> int:
        # History is append-only downstream too
        return self.load_jsonl(jsonl_path, self.history_table, HISTORY_SCHEMA, "WRITE_APPEND")

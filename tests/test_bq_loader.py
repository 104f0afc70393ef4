from unittest.mock import MagicMock, patch

import pytest
from google.cloud.exceptions import NotFound

from bridgescore.bq_loader import CALLS_SCHEMA, HISTORY_SCHEMA, BigQueryLoader
from bridgescore.config import Settings


class TestBigQueryLoader:
    def setup_method(self):
        self.client = MagicMock()
        self.client.project = "client-project"
        self.settings = Settings(bq_project_id="reporting", bq_dataset="sales")
        self.loader = BigQueryLoader(self.settings, client=self.client)

    def test_requires_project_or_client(self):
        with pytest.raises(ValueError):
            BigQueryLoader(Settings())

    def test_uses_client_project_when_unset(self):
        with patch("bridgescore.bq_loader.bigquery.Client") as client_cls:
            loader = BigQueryLoader(Settings(), client=self.client)

        assert loader.project_id == "client-project"
        client_cls.assert_not_called()

    def test_table_id(self):
        assert self.loader.table_id("calls") == "reporting.sales.calls"

    def test_missing_file_loads_nothing(self, tmp_path):
        assert self.loader.upload_history(tmp_path / "missing.jsonl") == 0
        self.client.load_table_from_file.assert_not_called()

    def test_upload_history_creates_dataset_and_table(self, tmp_path):
        path = tmp_path / "history.jsonl"
        path.write_text('{"id": "h1"}\n')
        self.client.get_dataset.side_effect = NotFound("dataset")
        self.client.get_table.side_effect = NotFound("table")
        job = self.client.load_table_from_file.return_value
        job.errors = None
        job.output_rows = 1

        rows = self.loader.upload_history(path)

        assert rows == 1
        self.client.create_dataset.assert_called_once()
        table = self.client.create_table.call_args[0][0]
        assert [field.name for field in table.schema] == [field.name for field in HISTORY_SCHEMA]
        _, table_id = self.client.load_table_from_file.call_args[0]
        assert table_id == "reporting.sales.call_score_history"
        job_config = self.client.load_table_from_file.call_args[1]["job_config"]
        assert job_config.write_disposition == "WRITE_APPEND"

    def test_upload_calls_existing_table(self, tmp_path):
        path = tmp_path / "calls.jsonl"
        path.write_text('{"id": "c1"}\n{"id": "c2"}\n')
        job = self.client.load_table_from_file.return_value
        job.errors = None
        job.output_rows = 2

        rows = self.loader.upload_calls(path, write_disposition="WRITE_TRUNCATE")

        assert rows == 2
        self.client.create_table.assert_not_called()
        job_config = self.client.load_table_from_file.call_args[1]["job_config"]
        assert job_config.write_disposition == "WRITE_TRUNCATE"

    def test_job_errors_report_zero_rows(self, tmp_path):
        path = tmp_path / "calls.jsonl"
        path.write_text('{"id": "c1"}\n')
        job = self.client.load_table_from_file.return_value
        job.errors = [{"message": "bad row"}]

        assert self.loader.upload_calls(path) == 0

    def test_schemas_name_the_score_columns(self):
        assert "score_breakdown" in [field.name for field in CALLS_SCHEMA]
        assert "rule_version_id" in [field.name for field in HISTORY_SCHEMA]

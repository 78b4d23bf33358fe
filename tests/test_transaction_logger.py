"""
Transaction Logger Tests
"""

import json

from relay_library.transaction_logger import TransactionLogger


class TestTransactionLogger:
    def test_disabled_logger_writes_nothing(self, tmp_path):
        logger = TransactionLogger("qwen3-coder-plus", "chatcmpl-1", enabled=False, root=tmp_path)
        logger.log_request({"model": "qwen3-coder-plus"})
        logger.log_error("ignored")

        assert logger.log_dir is None
        assert not (tmp_path / "logs").exists()

    def test_writes_one_directory_per_transaction(self, tmp_path):
        logger = TransactionLogger("qwen/coder:plus", "chatcmpl-abc", root=tmp_path)
        logger.log_request({"model": "qwen/coder:plus", "messages": []})
        logger.log_response_chunk('data: {"choices": []}')
        logger.log_response_chunk("data: [DONE]")
        logger.log_error("upstream hiccup")
        logger.log_final_response({"id": "chatcmpl-abc"})

        assert logger.log_dir.parent == tmp_path / "logs" / "relay_logs"
        assert logger.log_dir.name.endswith("_qwen_coder_plus_chatcmpl-abc")

        payload = json.loads((logger.log_dir / "request_payload.json").read_text(encoding="utf-8"))
        assert payload["model"] == "qwen/coder:plus"
        stream_log = (logger.log_dir / "response_stream.log").read_text(encoding="utf-8")
        assert stream_log.splitlines() == ['data: {"choices": []}', "data: [DONE]"]
        assert "upstream hiccup" in (logger.log_dir / "error.log").read_text(encoding="utf-8")
        final = json.loads((logger.log_dir / "final_response.json").read_text(encoding="utf-8"))
        assert final == {"id": "chatcmpl-abc"}

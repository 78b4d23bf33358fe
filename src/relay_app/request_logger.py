from datetime import datetime
import logging
from typing import Optional


def log_request_to_console(url: str, client_info: Optional[tuple], request_data: dict, default_model: str):
    """
    Logs a concise, single-line summary of an incoming request to the console.
    """
    time_str = datetime.now().strftime("%H:%M")
    model_name = request_data.get("model") or f"{default_model} (default)"
    mode = "stream" if request_data.get("stream") else "buffered"
    messages = request_data.get("messages")
    message_count = len(messages) if isinstance(messages, list) else 0

    if client_info:
        client = f"{client_info[0]}:{client_info[1]}"
    else:
        client = "unknown"

    log_message = f"{time_str} - {client} - model: {model_name}, {mode}, {message_count} messages - {url}"
    logging.info(log_message)

#Purpose: The webhook "adapter/client" for outbound dispatch events.
#Sole responsibility: POST each event as JSON to an external URL
#(admin dashboard, analytics collector, push gateway).
#Encapsulates HTTP-specific details:
#URL from the environment
#timeouts and status checking
#It should not contain dispatch rules.


from dotenv import load_dotenv
import logging
import os
from typing import Optional

import requests

from .events import Event
from .sinks import EventSink

# Read the webhook URL from environment
# Example in .env:
# EVENT_WEBHOOK_URL=http://localhost:8080/dispatch-events
load_dotenv()

logger = logging.getLogger(__name__)


class WebhookError(Exception):
    """Custom exception for webhook delivery errors."""
    pass


class WebhookEventSink(EventSink):
    """
    Webhook sink

    Sole responsibility:
    - Serialize each event to JSON
    - POST it to the configured URL
    - Raise WebhookError on a non-2xx answer (the notifier logs and drops it)
    """
    blocking = True

    def __init__(self, url: Optional[str] = None, timeout: float = 5, headers: Optional[dict] = None):
        self.url = url or os.getenv("EVENT_WEBHOOK_URL")
        self.timeout = timeout #seconds to wait for the receiver before giving up
        self.headers = headers or {}

        if not self.url:
            raise ValueError("Event webhook URL not set. Please set EVENT_WEBHOOK_URL in the .env file.")

    def emit(self, event: Event) -> None:
        payload = event.to_payload()

        response = requests.post(
            self.url,
            json=payload,
            headers=self.headers,
            timeout=self.timeout,
        )

        if not 200 <= response.status_code < 300:
            raise WebhookError(
                f"Webhook {self.url} rejected {payload['event']} for {event.request_id}: HTTP {response.status_code}"
            )

        logger.debug("Posted %s for %s to webhook", payload["event"], event.request_id)

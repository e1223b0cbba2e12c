"""
通知の送出キュー
マッチング処理は queue に積むだけで、配送はバックグラウンドのワーカーが行う。
配送の失敗はログに残して捨てる（マッチング結果には影響しない）。
"""

import logging
import os
import queue
import threading
from dataclasses import asdict, dataclass, field
from typing import Dict, List, Optional

import requests

from .models import utc_now_iso

logger = logging.getLogger(__name__)

_STOP = object()


@dataclass
class MatchNotification:
    type: str
    title: str
    message: str
    user_id: str
    auto_match_count: int = 0
    suggestions_count: int = 0
    partner_id: Optional[str] = None
    partner_name: Optional[str] = None
    category_id: Optional[str] = None
    category_name: Optional[str] = None
    created_at: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> Dict:
        return asdict(self)


def build_partner_match_notification(user_id: str, partner_id: str, partner_name: str, auto_match_count: int, suggestions_count: int) -> MatchNotification:
    title = f"{auto_match_count} receipt(s) matched for {partner_name}"
    message = f"Auto-connected {auto_match_count} file(s) to {partner_name} transactions"
    if suggestions_count:
        message += f"; {suggestions_count} suggestion(s) need review"
    return MatchNotification(
        type="file_partner_match",
        title=title,
        message=message,
        user_id=user_id,
        auto_match_count=auto_match_count,
        suggestions_count=suggestions_count,
        partner_id=partner_id,
        partner_name=partner_name,
    )


def build_category_match_notification(user_id: str, category_id: str, category_name: str, auto_match_count: int) -> MatchNotification:
    return MatchNotification(
        type="category_match",
        title=f"{auto_match_count} transaction(s) categorized as {category_name}",
        message=f"Applied no-receipt category {category_name} to {auto_match_count} transaction(s)",
        user_id=user_id,
        auto_match_count=auto_match_count,
        category_id=category_id,
        category_name=category_name,
    )


class SlackWebhookSink:
    """Slack Incoming Webhook への配送"""

    def __init__(self, webhook_url: Optional[str] = None, timeout: float = 10):
        self.webhook_url = webhook_url or os.getenv("SLACK_WEBHOOK_URL")
        self.timeout = timeout

    @property
    def configured(self) -> bool:
        url = self.webhook_url
        return bool(url) and "YOUR/WEBHOOK/URL" not in url and "XXXXXX" not in url

    def send(self, notification: MatchNotification) -> bool:
        if not self.configured:
            logger.info("Slack Webhook URL未設定 - 通知をスキップ: %s", notification.title)
            return False
        payload = {
            "text": notification.title,
            "attachments": [{
                "color": "good" if notification.auto_match_count else "warning",
                "text": notification.message,
                "mrkdwn_in": ["text"],
            }],
        }
        try:
            response = requests.post(self.webhook_url, json=payload, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            logger.warning("Slack通知の送信に失敗: %s", e)
            return False
        return True


class NotificationQueue:
    def __init__(self, sink: Optional[SlackWebhookSink] = None, maxsize: int = 1000):
        self.sink = sink or SlackWebhookSink()
        self._queue: "queue.Queue" = queue.Queue(maxsize=maxsize)
        self._worker: Optional[threading.Thread] = None
        self.delivered: List[MatchNotification] = []

    def emit(self, notification: MatchNotification):
        try:
            self._queue.put_nowait(notification)
        except queue.Full:
            logger.warning("通知キューが満杯のため破棄: %s", notification.title)

    def _deliver(self, notification: MatchNotification):
        try:
            if self.sink.send(notification):
                self.delivered.append(notification)
        except Exception:
            logger.exception("通知の配送中に予期しないエラー: %s", notification.title)

    def _run(self):
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                self._deliver(item)
            finally:
                self._queue.task_done()

    def start(self):
        if self._worker is None or not self._worker.is_alive():
            self._worker = threading.Thread(target=self._run, name="notification-worker", daemon=True)
            self._worker.start()

    def stop(self, timeout: float = 5):
        if self._worker is not None and self._worker.is_alive():
            self._queue.put(_STOP)
            self._worker.join(timeout)
        self._worker = None

    def drain(self) -> int:
        """ワーカーなしでキューを同期的に配送する（CLIの終了時やテスト用）"""
        count = 0
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return count
            try:
                if item is not _STOP:
                    self._deliver(item)
                    count += 1
            finally:
                self._queue.task_done()

    def pending(self) -> int:
        return self._queue.qsize()

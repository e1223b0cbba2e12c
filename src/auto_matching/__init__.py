"""取引先・書類の多シグナル自動マッチングエンジン"""

__version__ = "0.1.0"

"""
ログ出力の設定。

ファイルへの書き込みは QueueListener の別スレッドで行うため、ログを出力する側が
ファイル I/O で待たされることはありません。書き込みに失敗したログは破棄されます。
"""

import atexit
import logging
import logging.handlers
import queue
import sys
import threading
from typing import List, Optional, Tuple

LOGGER_NAME = 'marketplace'
LOG_FORMAT = '[%(asctime)s] [%(levelname)s] %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

_listener: Optional[logging.handlers.QueueListener] = None


class MemoryLogHandler(logging.Handler):
    """整形済みのログをメモリ上に保持するハンドラ。"""

    def __init__(self, level=logging.NOTSET):
        super().__init__(level)
        self._entries: List[str] = []
        self._entries_lock = threading.Lock()

    def emit(self, record):
        try:
            entry = self.format(record)
        except Exception:
            self.handleError(record)
            return
        with self._entries_lock:
            self._entries.append(entry)

    def entries(self) -> Tuple[str, ...]:
        with self._entries_lock:
            return tuple(self._entries)

    def clear(self):
        with self._entries_lock:
            self._entries.clear()


class BestEffortFileHandler(logging.FileHandler):
    """書き込みに失敗しても例外を報告せずに破棄するファイルハンドラ。"""

    def __init__(self, filename, encoding='utf-8'):
        super().__init__(filename, encoding=encoding, delay=True)

    def emit(self, record):
        # ファイルを開けない場合も FileHandler は例外を送出するため、ここで破棄する
        try:
            super().emit(record)
        except Exception:
            self.handleError(record)

    def handleError(self, record):
        pass


memory_handler = MemoryLogHandler()
memory_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))


def get_logger(name: Optional[str] = None) -> logging.Logger:
    if not name or name == LOGGER_NAME:
        return logging.getLogger(LOGGER_NAME)
    return logging.getLogger(f"{LOGGER_NAME}.{name}")


def setup_logging(level: str = 'INFO', log_file: Optional[str] = None) -> logging.Logger:
    """
    marketplace ロガーを設定します。何度呼び出しても既存のハンドラは置き換えられます。

    Args:
        level: ログレベル名 (DEBUG, INFO, WARNING, ERROR)。
        log_file: ログを追記するファイルのパス。None の場合はファイルに出力しません。
    """
    shutdown_logging()

    log = logging.getLogger(LOGGER_NAME)
    log.setLevel(getattr(logging, str(level).upper(), logging.INFO))
    log.propagate = False
    for handler in list(log.handlers):
        log.removeHandler(handler)

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(formatter)
    log.addHandler(console)

    memory_handler.setFormatter(formatter)
    log.addHandler(memory_handler)

    if log_file:
        global _listener
        log_queue: queue.Queue = queue.Queue(-1)
        file_handler = BestEffortFileHandler(log_file)
        file_handler.setFormatter(formatter)
        _listener = logging.handlers.QueueListener(log_queue, file_handler)
        _listener.start()
        log.addHandler(logging.handlers.QueueHandler(log_queue))

    return log


def shutdown_logging():
    """ファイル出力用のリスナーを停止し、キューに残ったログを書き出します。"""
    global _listener
    if _listener is None:
        return
    listener, _listener = _listener, None
    listener.stop()
    for handler in listener.handlers:
        handler.close()


def get_logs() -> Tuple[str, ...]:
    """これまでに出力されたログを返します。"""
    return memory_handler.entries()


def clear_logs():
    """メモリ上のログを消去し、消去したことを記録します。setup_logging() の前でも記録は残ります。"""
    memory_handler.clear()
    log = get_logger()
    if memory_handler in log.handlers:
        log.info("Logs cleared")
    else:
        memory_handler.handle(log.makeRecord(log.name, logging.INFO, __file__, 0, "Logs cleared", None, None))


atexit.register(shutdown_logging)

from livemonitor.core.settings import settings
from livemonitor.utils import logger as logmod
from livemonitor.utils.request_context import pass_id_var


class RecordingLogger:
    def __init__(self) -> None:
        self.patcher = None
        self.sinks = []

    def remove(self) -> None:
        self.sinks.clear()

    def configure(self, *, patcher) -> None:
        self.patcher = patcher

    def add(self, sink, **kwargs) -> None:
        self.sinks.append(kwargs)


def test_enqueue_follows_setting_unless_overridden(monkeypatch):
    fake = RecordingLogger()
    monkeypatch.setattr(logmod, "logger", fake)

    monkeypatch.setattr(settings, "LOG_ENQUEUE", True, raising=False)
    logmod.configure_logging("debug")
    assert fake.sinks[-1]["enqueue"] is True
    assert fake.sinks[-1]["level"] == "DEBUG"

    logmod.configure_logging(enqueue=False)
    assert len(fake.sinks) == 1
    assert fake.sinks[-1]["enqueue"] is False
    assert fake.sinks[-1]["level"] == settings.LOG_LEVEL.upper()


def test_records_carry_pass_id():
    record = {"extra": {}}
    token = pass_id_var.set(7)
    try:
        logmod._attach_context(record)
    finally:
        pass_id_var.reset(token)

    assert record["extra"] == {"pass_id": 7, "request_id": "-"}

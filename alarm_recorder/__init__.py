"""Alarm Recorder - event-triggered video segments and alarm reporting"""

from .errors import (
    AlarmRecorderError, ConfigError, WriterOpenError, SnapshotWriteError, TransportError
)
from .data_models import Detection, Frame, PendingEvent, ChannelState
from .config_manager import (
    RecorderConfig, RetentionPolicy, ServerEndpoint, ReportFields,
    FixedType, DetectedClassType, ClassMapType, DefaultType,
    load_config, load_config_file, parse_server_url
)
from .type_resolver import resolve_type
from .segment_recorder import OpenPathRegistry, SegmentRecorder, save_snapshot
from .alarm_reporter import AlarmReporter, make_url
from .event_aggregator import EventAggregator
from .trigger_engine import ChannelRegistry, TriggerEngine
from .retention import RetentionCleanupService
from .channel_worker import ChannelWorker
from .json_logging import configure_logging, get_logger

__all__ = [
    'AlarmRecorderError', 'ConfigError', 'WriterOpenError', 'SnapshotWriteError', 'TransportError',
    'Detection', 'Frame', 'PendingEvent', 'ChannelState',
    'RecorderConfig', 'RetentionPolicy', 'ServerEndpoint', 'ReportFields',
    'FixedType', 'DetectedClassType', 'ClassMapType', 'DefaultType',
    'load_config', 'load_config_file', 'parse_server_url',
    'resolve_type',
    'OpenPathRegistry', 'SegmentRecorder', 'save_snapshot',
    'AlarmReporter', 'make_url',
    'EventAggregator',
    'ChannelRegistry', 'TriggerEngine',
    'RetentionCleanupService',
    'ChannelWorker',
    'configure_logging', 'get_logger',
]

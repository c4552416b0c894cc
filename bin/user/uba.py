# Copyright 2025 by John A Kline <john@johnkline.com>
#
# This program is free software; you can redistribute it and/or
# modify it under the terms of the GNU General Public License
# as published by the Free Software Foundation; either version 2
# of the License, or (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program; if not, write to the Free Software
# Foundation, Inc., 51 Franklin Street, Fifth Floor, Boston, MA  02110-1301, USA.

"""
WeeWX module that records air quality readings published by the
Umweltbundesamt (UBA) for a German monitoring station.

The station list is browsable here:
https://www.umweltbundesamt.de/daten/luftbelastung/aktuelle-luftdaten#/stations

Two API shapes are supported.  The air quality API returns every pollutant
and the air quality index of a station in one request.  The older
measuring API returns one pollutant per request.
"""

import datetime
import json
import logging
import os
import requests
import sys
import threading
import time

from dateutil.parser import parse

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

import weeutil.logger
import weewx
import weewx.units

from weeutil.weeutil import option_as_list
from weeutil.weeutil import timestamp_to_string
from weeutil.weeutil import to_bool
from weeutil.weeutil import to_int
from weewx.engine import StdService

log = logging.getLogger(__name__)

WEEWX_UBA_VERSION = "1.0"

if sys.version_info[0] < 3 or (sys.version_info[0] == 3 and sys.version_info[1] < 9):
    raise weewx.UnsupportedFeature(
        "weewx-uba requires Python 3.9 or later, found %s.%s" % (sys.version_info[0], sys.version_info[1]))

if weewx.__version__ < "4":
    raise weewx.UnsupportedFeature(
        "weewx-uba requires WeeWX 4, found %s" % weewx.__version__)

# Set up observation types not in weewx.units

weewx.units.USUnits['group_uba_index']       = 'uba_index'
weewx.units.MetricUnits['group_uba_index']   = 'uba_index'
weewx.units.MetricWXUnits['group_uba_index'] = 'uba_index'

weewx.units.default_unit_label_dict['uba_index']  = ' LQI'
weewx.units.default_unit_format_dict['uba_index'] = '%d'

weewx.units.obs_group_dict['uba_index'] = 'group_uba_index'
weewx.units.obs_group_dict['uba_pm10']  = 'group_concentration'
weewx.units.obs_group_dict['uba_co']    = 'group_concentration'
weewx.units.obs_group_dict['uba_o3']    = 'group_concentration'
weewx.units.obs_group_dict['uba_so2']   = 'group_concentration'
weewx.units.obs_group_dict['uba_no2']   = 'group_concentration'

AIRQUALITY_URL = 'https://www.umweltbundesamt.de/api/air_data/v2/airquality/json'
MEASURING_URL  = 'http://www.umweltbundesamt.de/js/uaq/data/stations/measuring'

# Local times reported by UBA carry a fixed offset (CET, no DST).
UTC_OFFSET = '+0100'

# Deliberate overlap on both ends of a fetch window.
WINDOW_OVERLAP_SECS = 60

POLL_SECS        = 3600
RETRY_SECS       = 600
RETRY_ERROR_SECS = 3600
RETENTION_DAYS   = 30
TIMEOUT_SECS     = 10

INDEX_READING      = 'luftqualitaetsindex'
INDEX_NAME_READING = 'luftqualitaetsindex_name'

DEFAULT_POLLUTANTS: Dict[int, str] = {
    1: 'PM10',
    2: 'CO',
    3: 'O3',
    4: 'SO2',
    5: 'NO2',
}

DEFAULT_LEGACY_POLLUTANTS: List[str] = ['CO', 'NO2', 'O3', 'PM10', 'SO2']

INDEX_LABELS: Dict[int, str] = {
    0: 'sehr gut',
    1: 'gut',
    2: 'mäßig',
    3: 'schlecht',
    4: 'sehr schlecht',
}

# Values of the 'state' reading.
STATE_INITIALIZED = 'Initialized'
STATE_DISABLED    = 'disabled'
STATE_ERROR       = 'error'
STATE_PARSING     = 'parsing'
STATE_DONE        = 'done'

class UBAError(Exception):
    """A fetch-and-ingest cycle failed; the next scheduled cycle retries."""

class TransportError(UBAError):
    pass

class EmptyResponse(UBAError):
    pass

class MalformedPayload(UBAError):
    pass

class DecodeError(UBAError):
    pass

@dataclass(frozen=True)
class Window:
    start : int # first second requested (mark minus overlap)
    end   : int # last second requested (now plus overlap)
    mark  : int # high-water-mark the window was computed from
    base  : int # where the next search begins, never before the mark

@dataclass(frozen=True)
class Stream:
    name           : str      # 'airquality' or a pollutant name for the measuring API
    station        : str      # station id requested for this stream
    mark_reading   : str      # hidden reading holding the high-water-mark
    time_reading   : str      # visible reading holding the formatted high-water-mark
    search_reading : str = '' # hidden reading holding how far empty searches got past the mark

@dataclass
class RawSample:
    key          : str                     # timestamp key as found in the payload
    timestamp    : int                     # normalized epoch seconds
    index_code   : Optional[int]           # air quality index, None if not reported
    measurements : List[Tuple[Any, Any]]   # (pollutant code, value)

@dataclass(frozen=True)
class ReadingEvent:
    name      : str
    value     : Any
    timestamp : int
    is_index  : bool

@dataclass
class IngestResult:
    events          : List[ReadingEvent]
    high_water_mark : Optional[int]

@dataclass
class Reading:
    value     : Any
    timestamp : int

def offset_tz(utc_offset: str) -> datetime.tzinfo:
    return parse('2000-01-01 00:00:00 %s' % utc_offset).tzinfo

def local_datetime(ts: int, utc_offset: str = UTC_OFFSET) -> datetime.datetime:
    return datetime.datetime.fromtimestamp(ts, tz=offset_tz(utc_offset))

def format_time(ts: int) -> str:
    return time.strftime('%Y-%m-%d %H:%M:%S', time.localtime(ts))

def truncate_to_minute(ts: float) -> int:
    ts = int(ts)
    return ts - ts % 60

def compute_window(now: float, high_water_mark: Optional[int], retention_days: int,
                   searched_up_to: Optional[int] = None) -> Window:
    """
    Compute the fetch window for a stream.

    An unset mark, or one older than the retention window, is
    (re)initialized to the start of the retention window, truncated to
    the minute.  The window reaches one minute behind the mark and one
    minute past now.

    searched_up_to is where an earlier search that found nothing ended.
    It moves the base of the next search forward but never the mark, and
    is ignored once the mark has caught up with it.
    """
    oldest = now - retention_days * 24 * 3600
    if high_water_mark is None or high_water_mark < oldest:
        mark = truncate_to_minute(oldest)
    else:
        mark = int(high_water_mark)
    end = int(now) + WINDOW_OVERLAP_SECS
    start = min(mark - WINDOW_OVERLAP_SECS, end)
    base = mark
    if searched_up_to is not None and mark < searched_up_to <= end:
        base = int(searched_up_to)
    return Window(start=start, end=end, mark=mark, base=base)

def normalize_timestamp(dt_str: str, utc_offset: str = UTC_OFFSET) -> int:
    """
    Convert a 'YYYY-MM-DD HH:MM:SS' local time to epoch seconds.

    UBA labels hourly buckets by the hour they end in, so '24:00:00' is the
    last bucket of that same day: it is parsed as midnight and moved
    forward 23 hours.
    """
    if not isinstance(dt_str, str):
        raise DecodeError('timestamp is not a string: %r' % (dt_str,))
    try:
        date_part, time_part = dt_str.strip().split(' ')
        hour_24 = time_part.startswith('24')
        if hour_24:
            time_part = '00' + time_part[2:]
        dt = parse('%s %s %s' % (date_part, time_part, utc_offset))
    except (ValueError, OverflowError) as e:
        raise DecodeError('timestamp could not be converted to a dateTime: %s (%s)' % (dt_str, e))
    ts = int(dt.timestamp())
    if hour_24:
        ts += 23 * 3600
    return ts

def normalize_value(pollutant: str, value: Any) -> Optional[float]:
    """Returns None when there was no measurement."""
    if value is None:
        return None
    try:
        value = float(value)
    except (TypeError, ValueError):
        raise DecodeError('%s value is not a number: %r' % (pollutant, value))
    if value <= 0:
        return None
    # The measuring API reports CO in mg/m3 most of the time.
    if pollutant == 'CO' and int(value) <= 100:
        value *= 1000
    return value

def is_measurement(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0

def to_number(value: Any) -> Any:
    if value is None or isinstance(value, (int, float)):
        return value
    try:
        return float(value)
    except (TypeError, ValueError):
        raise DecodeError('value is not a number: %r' % (value,))

def http_get(url: str, params: Dict[str, Any], timeout: int) -> str:
    try:
        log.debug('http_get: fetching from url: %s, params: %s, timeout: %d' % (url, params, timeout))
        r = requests.get(url=url, params=params, timeout=timeout)
        r.raise_for_status()
        log.debug('http_get: %s returned %r' % (url, r))
    except requests.exceptions.RequestException as e:
        raise TransportError('Attempt to fetch from %s failed: %s' % (url, e))
    return r.text

def decode_payload(body: Optional[str]) -> Dict[str, Any]:
    if body is None or body.strip() == '':
        raise EmptyResponse('Received no data')
    text = body.strip()
    if not (text.startswith('{') and text.endswith('}')):
        raise MalformedPayload('Response is not a JSON object: %.80r' % text)
    try:
        payload = json.loads(text)
    except ValueError as e:
        raise DecodeError('JSON evaluation error: %s' % e)
    if not isinstance(payload, dict):
        raise DecodeError('Response is not a JSON object: %.80r' % text)
    return payload

class PayloadAdapter:
    """Knows the request and response shape of one UBA API."""

    name = ''

    def streams(self, cfg: 'Configuration') -> List[Stream]:
        raise NotImplementedError

    def build_request(self, stream: Stream, window: Window, cfg: 'Configuration') -> Optional[Tuple[str, Dict[str, Any]]]:
        """Returns (url, params), or None if nothing can be new yet."""
        raise NotImplementedError

    def searched_up_to(self, window: Window) -> Optional[int]:
        """
        Where a request for window ended if it stopped short of the window
        end, else None.  A search that found nothing resumes from there.
        """
        return None

    def samples(self, payload: Dict[str, Any], stream: Stream, base: int,
                utc_offset: str) -> List[RawSample]:
        """Decode the whole payload, in chronological order, or raise DecodeError."""
        raise NotImplementedError

class AirQualityAdapter(PayloadAdapter):
    """
    Air quality API: one request returns all pollutants of a station.

    {"data": {"DEBY039": {"2020-01-21 10:00:00": ["2020-01-21 11:00:00", 1, 0,
                                                  [1, 42, 1, "0.84"], [5, 18, 1, "0.45"]]}}}
    """

    name = 'airquality'

    def streams(self, cfg):
        return [Stream(name=self.name, station=cfg.station,
                       mark_reading='.lastUpdate', time_reading='lastUpdate')]

    def build_request(self, stream, window, cfg):
        start = local_datetime(window.start, cfg.utc_offset)
        end = local_datetime(window.end, cfg.utc_offset)
        # Hours are given in the 1-24 hour-ending convention.
        return AIRQUALITY_URL, {
            'date_from': start.strftime('%Y-%m-%d'),
            'time_from': start.hour + 1,
            'date_to'  : end.strftime('%Y-%m-%d'),
            'time_to'  : end.hour + 1,
            'station'  : stream.station,
        }

    def samples(self, payload, stream, base, utc_offset):
        data = payload.get('data')
        if not isinstance(data, dict):
            raise DecodeError('data is not an object: %.80r' % (data,))
        station_data = data.get(stream.station, {})
        if not isinstance(station_data, dict):
            raise DecodeError('data for %s is not an object: %.80r' % (stream.station, station_data))

        samples: List[RawSample] = []
        # Keys are sortable date-time strings.
        for key in sorted(station_data):
            entry = station_data[key]
            if not isinstance(entry, list) or len(entry) < 3:
                raise DecodeError('sample %s is not a list: %.80r' % (key, entry))
            index_code = entry[1]
            if index_code is not None and (not isinstance(index_code, int) or isinstance(index_code, bool)):
                raise DecodeError('sample %s has a non-integer index: %r' % (key, index_code))
            measurements = []
            for component in entry[3:]:
                if not isinstance(component, list) or len(component) < 2:
                    raise DecodeError('sample %s has a malformed component: %r' % (key, component))
                measurements.append((component[0], to_number(component[1])))
            samples.append(RawSample(
                key          = key,
                timestamp    = normalize_timestamp(key, utc_offset),
                index_code   = index_code,
                measurements = measurements))
        return samples

class MeasuringAdapter(PayloadAdapter):
    """
    Measuring API: one request per pollutant and station.

    {"time_scope": [3600], "data": [[[17.0], [null], [21.0]]]}

    The n-th datapoint (counting from one) belongs to base + n * time_scope,
    base being the mark, or the end of the last search that found nothing.
    """

    name = 'measuring'

    # The API serves at most one day per request.
    MAX_RANGE_SECS = 24 * 3600

    def streams(self, cfg):
        return [Stream(name=pollutant, station=cfg.stations.get(pollutant, cfg.station),
                       mark_reading='.lastUpdate%s' % pollutant,
                       time_reading='lastUpdate%s' % pollutant,
                       search_reading='.searchedUpTo%s' % pollutant)
                for pollutant in cfg.pollutants.values()]

    def build_request(self, stream, window, cfg):
        # The range starts half an hour into the first hour.
        start = window.base + 1800
        end = min(window.end, window.base + self.MAX_RANGE_SECS)
        if start > end:
            return None
        return MEASURING_URL, {
            'pollutant[]': stream.name,
            'scope[]'    : '8SMW' if stream.name == 'CO' else '1SMW',
            'station[]'  : stream.station,
            'group[]'    : 'pollutant',
            'range[]'    : '%d,%d' % (start, end),
        }

    def searched_up_to(self, window):
        end = window.base + self.MAX_RANGE_SECS
        return end if end < window.end else None

    def samples(self, payload, stream, base, utc_offset):
        time_scope = payload.get('time_scope')
        if not isinstance(time_scope, list) or not time_scope or not is_measurement(time_scope[0]):
            raise DecodeError('time_scope is missing or invalid: %.80r' % (time_scope,))
        data = payload.get('data')
        if not isinstance(data, list):
            raise DecodeError('data is not a list: %.80r' % (data,))
        series = data[0] if data else []
        if not isinstance(series, list):
            raise DecodeError('data series is not a list: %.80r' % (series,))

        samples: List[RawSample] = []
        for n, datapoint in enumerate(series, 1):
            if not isinstance(datapoint, list):
                raise DecodeError('datapoint %d is not a list: %r' % (n, datapoint))
            value = normalize_value(stream.name, datapoint[0] if datapoint else None)
            ts = base + int(time_scope[0]) * n
            samples.append(RawSample(
                key          = '%d' % ts,
                timestamp    = ts,
                index_code   = None,
                measurements = [(stream.name, value)] if value is not None else []))
        return samples

ADAPTERS: Dict[str, Callable[[], PayloadAdapter]] = {
    AirQualityAdapter.name: AirQualityAdapter,
    MeasuringAdapter.name : MeasuringAdapter,
}

class IngestionEngine:
    """
    Turns a decoded payload into reading events newer than a high-water-mark.
    """

    def __init__(self, adapter: PayloadAdapter, pollutants: Dict[Any, str],
                 index_labels: Dict[int, str] = INDEX_LABELS, utc_offset: str = UTC_OFFSET):
        self.adapter      = adapter
        self.pollutants   = pollutants
        self.index_labels = index_labels
        self.utc_offset   = utc_offset

    def ingest(self, payload: Dict[str, Any], stream: Stream, high_water_mark: int,
               base: Optional[int] = None) -> IngestResult:
        """
        base is where the request started when that differs from the
        mark; the measuring API stamps its datapoints relative to it.
        """
        # Decode everything before emitting anything.
        samples = self.adapter.samples(payload, stream,
                                       high_water_mark if base is None else base, self.utc_offset)

        events: List[ReadingEvent] = []
        newest: Optional[int] = high_water_mark
        for sample in samples:
            ts = sample.timestamp
            if high_water_mark is not None and ts <= high_water_mark:
                log.debug('ingest: skipping %s, already have data up to %s' % (
                    sample.key, timestamp_to_string(high_water_mark)))
                continue
            emitted = 0
            # No index reported (always so for the measuring API): keep the last index readings.
            if sample.index_code is not None:
                events.append(ReadingEvent(INDEX_READING, sample.index_code, ts, True))
                events.append(ReadingEvent(INDEX_NAME_READING, self.index_labels.get(sample.index_code), ts, True))
                emitted += 2
            for code, value in sample.measurements:
                name = self.pollutants.get(code)
                if name is None:
                    log.info('Unrecognized pollutant code %r in sample %s of %s, skipping.' % (
                        code, sample.key, stream.station))
                    continue
                if not is_measurement(value):
                    log.debug('ingest: no %s measurement in sample %s' % (name, sample.key))
                    continue
                events.append(ReadingEvent(name, value, ts, False))
                emitted += 1
            if emitted and (newest is None or ts > newest):
                newest = ts
        return IngestResult(events=events, high_water_mark=newest)

@dataclass(frozen=True)
class Configuration:
    station            : str             # Required
    station_name       : str             # Informative only
    adapter            : PayloadAdapter
    pollutants         : Dict[Any, str]  # Pollutant code -> reading name
    stations           : Dict[str, str]  # Per pollutant station overrides (measuring API)
    poll_secs          : int
    retention_days     : int
    timeout            : int
    fresh_secs         : int
    show_time_readings : bool
    utc_offset         : str
    state_file         : Optional[str]
    loop_fields        : Dict[str, str] = field(default_factory=dict)

def configure_pollutants(config_dict: Dict[str, Any], api: str) -> Dict[Any, str]:
    if api == MeasuringAdapter.name:
        names = option_as_list(config_dict.get('pollutants', DEFAULT_LEGACY_POLLUTANTS))
        return {name.strip(): name.strip() for name in names if name.strip()}

    pollutants: Dict[Any, str] = dict(DEFAULT_POLLUTANTS)
    try:
        # Raise KeyError if 'Pollutants' not in config_dict.
        pollutants_dict = config_dict['Pollutants']
        for key in pollutants_dict:
            try:
                pollutants[int(key)] = str(pollutants_dict[key])
            except ValueError:
                log.info('keys in Pollutants must be integer pollutant codes, skipping this entry: %s' % key)
    except KeyError:
        pass
    return pollutants

def configure_stations(config_dict: Dict[str, Any], pollutants: Dict[Any, str]) -> Dict[str, str]:
    stations = {}
    for name in pollutants.values():
        station = config_dict.get('station%s' % name)
        if station:
            stations[name] = station
    return stations

def configure_loop_fields(config_dict: Dict[str, Any]) -> Dict[str, str]:
    loop_fields = {}
    try:
        # Raise KeyError if 'LoopFields' not in config_dict.
        loop_fields_dict = config_dict['LoopFields']
        for key in loop_fields_dict:
            if not isinstance(loop_fields_dict[key], str):
                log.info('values in LoopFields must be strings that corresspond to Loop record fields, skipping this entry: %s' % key)
            else:
                loop_fields[key] = loop_fields_dict[key]
    except KeyError:
        log.info("No LoopFields section in weewx.conf's UBA section, no fields will be written to Loop records")
    return loop_fields

def configure(config_dict: Dict[str, Any]) -> Configuration:
    api = config_dict.get('api', AirQualityAdapter.name).lower()
    if api not in ADAPTERS:
        raise weewx.ViolatedPrecondition('Unknown UBA api: %s, choose one of %s' % (api, ', '.join(ADAPTERS)))
    station = config_dict.get('station', '')
    poll_secs = to_int(config_dict.get('poll_secs', POLL_SECS))
    pollutants = configure_pollutants(config_dict, api)
    return Configuration(
        station            = station,
        station_name       = config_dict.get('station_name', station),
        adapter            = ADAPTERS[api](),
        pollutants         = pollutants,
        stations           = configure_stations(config_dict, pollutants),
        poll_secs          = poll_secs,
        retention_days     = to_int(config_dict.get('retention_days', RETENTION_DAYS)),
        timeout            = to_int(config_dict.get('timeout', TIMEOUT_SECS)),
        fresh_secs         = to_int(config_dict.get('fresh_secs', 3 * poll_secs)),
        show_time_readings = to_bool(config_dict.get('show_time_readings', False)),
        utc_offset         = config_dict.get('utc_offset', UTC_OFFSET),
        state_file         = config_dict.get('state_file') or None,
        loop_fields        = configure_loop_fields(config_dict))

class ReadingsStore:
    """Latest value of every reading, optionally kept in a JSON file."""

    def __init__(self, state_file: Optional[str] = None):
        self.lock = threading.Lock()
        self.readings: Dict[str, Reading] = {} # Controlled by lock
        self.state_file = state_file

    def get(self, name: str, default: Any = None) -> Any:
        with self.lock:
            reading = self.readings.get(name)
            return default if reading is None else reading.value

    def get_reading(self, name: str) -> Optional[Reading]:
        with self.lock:
            return self.readings.get(name)

    def update(self, name: str, value: Any, timestamp: int, changed_only: bool = False) -> bool:
        with self.lock:
            current = self.readings.get(name)
            if changed_only and current is not None and current.value == value:
                return False
            self.readings[name] = Reading(value=value, timestamp=int(timestamp))
            return True

    def apply(self, events: List[ReadingEvent]) -> int:
        changed = 0
        for event in events:
            if self.update(event.name, event.value, event.timestamp, changed_only=True):
                changed += 1
        return changed

    def newest_mark(self) -> Optional[int]:
        with self.lock:
            marks = [r.value for name, r in self.readings.items()
                     if name.startswith('.lastUpdate') and r.value is not None]
        return max(marks) if marks else None

    def snapshot(self) -> Dict[str, Reading]:
        with self.lock:
            return dict(self.readings)

    def load(self) -> None:
        if not self.state_file:
            return
        try:
            with open(self.state_file, 'r', encoding='utf-8') as f:
                j = json.load(f)
        except FileNotFoundError:
            log.info('No state file at %s, starting without stored readings.' % self.state_file)
            return
        except (OSError, ValueError) as e:
            log.error('Could not read state file %s: %s.  Starting without stored readings.' % (self.state_file, e))
            return
        try:
            loaded = {name: Reading(value=value, timestamp=int(timestamp))
                      for name, (value, timestamp) in j.items()}
        except (AttributeError, TypeError, ValueError) as e:
            log.error('Unexpected contents in state file %s: %s.  Starting without stored readings.' % (
                self.state_file, e))
            return
        with self.lock:
            self.readings.update(loaded)
        log.info('Loaded %d readings from %s.' % (len(loaded), self.state_file))

    def save(self) -> None:
        if not self.state_file:
            return
        with self.lock:
            j = {name: [r.value, r.timestamp] for name, r in self.readings.items()}
        tmp = '%s.tmp' % self.state_file
        try:
            with open(tmp, 'w', encoding='utf-8') as f:
                json.dump(j, f, ensure_ascii=False)
            os.replace(tmp, self.state_file)
        except OSError as e:
            log.error('Could not write state file %s: %s' % (self.state_file, e))

def retry_secs(previous_state: Optional[str]) -> int:
    # Back off further when the previous cycle failed too.
    if previous_state == STATE_ERROR:
        return RETRY_ERROR_SECS
    return RETRY_SECS

class StationPoller:
    def __init__(self, cfg: Configuration, readings: ReadingsStore,
                 fetch: Callable[[str, Dict[str, Any], int], str] = http_get,
                 stop_event: Optional[threading.Event] = None):
        self.cfg = cfg
        self.readings = readings
        self.fetch = fetch
        self.stop_event = stop_event if stop_event is not None else threading.Event()
        self.engine = IngestionEngine(cfg.adapter, cfg.pollutants, INDEX_LABELS, cfg.utc_offset)

    def run_cycle(self, now: Optional[int] = None) -> int:
        """Fetch and ingest every stream once.  Returns seconds until the next cycle."""
        now = int(time.time()) if now is None else now
        previous_state = self.readings.get('state')
        try:
            count = 0
            for stream in self.cfg.adapter.streams(self.cfg):
                if self.stop_event.is_set():
                    log.debug('run_cycle: stop requested, abandoning cycle.')
                    return 0
                count += self.ingest_stream(stream, now)
        except UBAError as e:
            log.error('%s for station %s: %s' % (type(e).__name__, self.cfg.station, e))
            return self.record_failure(previous_state, now)
        except Exception as e:
            log.error('run_cycle exception: %s' % e)
            weeutil.logger.log_traceback(log.critical, "    ****  ")
            return self.record_failure(previous_state, now)

        self.readings.update('state', STATE_DONE, now)
        self.readings.save()
        log.debug('run_cycle: %d readings, next cycle in %d seconds.' % (count, self.cfg.poll_secs))
        return self.cfg.poll_secs

    def record_failure(self, previous_state: Optional[str], now: int) -> int:
        delay = retry_secs(previous_state)
        self.readings.update('state', STATE_ERROR, now)
        self.readings.save()
        log.info('Retrying in %d seconds.' % delay)
        return delay

    def ingest_stream(self, stream: Stream, now: int) -> int:
        mark = self.readings.get(stream.mark_reading)
        searched = self.readings.get(stream.search_reading) if stream.search_reading else None
        window = compute_window(now, mark, self.cfg.retention_days, searched)
        if mark is not None and window.mark != mark:
            log.info('Data for %s older than %d days, starting over at %s.' % (
                stream.name, self.cfg.retention_days, timestamp_to_string(window.mark)))

        request = self.cfg.adapter.build_request(stream, window, self.cfg)
        if request is None:
            log.debug('ingest_stream: nothing new possible yet for %s' % stream.name)
            return 0
        url, params = request
        log.info('Getting %s data for %s from %s' % (stream.name, stream.station, url))

        body = self.fetch(url, params, self.cfg.timeout)
        self.readings.update('state', STATE_PARSING, now)
        payload = decode_payload(body)
        result = self.engine.ingest(payload, stream, window.mark, window.base)

        if not result.events:
            log.info('Received no new %s data after %s.' % (stream.name, timestamp_to_string(window.base)))
            searched = self.cfg.adapter.searched_up_to(window)
            if searched is not None:
                self.readings.update(stream.search_reading, searched, now)
                log.info('Continuing %s search at %s.' % (stream.name, timestamp_to_string(searched)))
            return 0

        changed = self.readings.apply(result.events)
        self.readings.update(stream.mark_reading, result.high_water_mark, now)
        if self.cfg.show_time_readings:
            self.readings.update(stream.time_reading, format_time(result.high_water_mark), now)
        log.info('Received %d values (%d changed) for %s up to %s.' % (
            len(result.events), changed, stream.name, timestamp_to_string(result.high_water_mark)))
        return len(result.events)

    def poll_device(self) -> None:
        log.debug('poll_device: start')
        delay = 0
        while not self.stop_event.wait(delay):
            delay = self.run_cycle()
            log.debug('poll_device: Sleeping for %d seconds.' % delay)
        log.debug('poll_device: stopped')

class UBA(StdService):
    """Collect UBA air quality measurements."""

    def __init__(self, engine, config_dict):
        super(UBA, self).__init__(engine, config_dict)
        log.info("Service version is %s." % WEEWX_UBA_VERSION)

        self.engine = engine
        self.config_dict = config_dict.get('UBA', {})
        self.stop_event = threading.Event()
        self.thread: Optional[threading.Thread] = None

        self.cfg = configure(self.config_dict)
        self.readings = ReadingsStore(self.cfg.state_file)
        self.readings.load()

        log.info('station       : %s (%s)' % (self.cfg.station, self.cfg.station_name))
        log.info('api           : %s' % self.cfg.adapter.name)
        log.info('poll_secs     : %d' % self.cfg.poll_secs)
        log.info('retention_days: %d' % self.cfg.retention_days)
        log.info('fresh_secs    : %d' % self.cfg.fresh_secs)
        for code, name in self.cfg.pollutants.items():
            log.info('Pollutant %s: %s' % (code, name))
        loopfield_count: int = 0
        for key in self.cfg.loop_fields:
            loopfield_count += 1
            log.info('LoopField %d: %s = %s' % (loopfield_count, key, self.cfg.loop_fields[key]))

        now = int(time.time())
        if not to_bool(self.config_dict.get('enable', True)):
            self.readings.update('state', STATE_DISABLED, now)
            log.info('uba is disabled, data update cancelled.')
            return
        if not self.cfg.station:
            log.error('No station configured for uba extension.  UBA extension is inoperable.')
            return

        self.readings.update('state', STATE_INITIALIZED, now)

        # Start a thread to poll UBA and make readings available to loopdata
        poller = StationPoller(self.cfg, self.readings, stop_event=self.stop_event)
        self.thread = threading.Thread(target=poller.poll_device, name='UBA', daemon=True)
        self.thread.start()

        self.bind(weewx.NEW_LOOP_PACKET, self.new_loop_packet)

    def new_loop_packet(self, event):
        log.debug('new_loop_packet(%s)' % event)
        newest = self.readings.newest_mark()
        if newest is None or newest + self.cfg.fresh_secs < time.time():
            log.debug('Found no fresh readings to insert.')
            return
        for name, obs_type in self.cfg.loop_fields.items():
            value = self.readings.get(name)
            if value is not None:
                log.debug('packet[%s] = %r' % (obs_type, value))
                event.packet[obs_type] = value

    def shutDown(self):
        self.stop_event.set()
        if self.thread is not None:
            self.thread.join(self.cfg.timeout + 5)
            if self.thread.is_alive():
                log.error('UBA thread did not stop within %d seconds.' % (self.cfg.timeout + 5))
            self.thread = None
        self.readings.save()

if __name__ == "__main__":
    usage = """%prog [options] [--help] [--debug]"""

    def main():
        import optparse

        parser = optparse.OptionParser(usage=usage)
        parser.add_option('--test-collector', dest='tc', action='store_true',
                          help='run one fetch-and-ingest cycle and print the readings')
        parser.add_option('--station', dest='station', action='store',
                          help='UBA station id to use with --test-collector, e.g. DEBY039')
        parser.add_option('--api', dest='api', action='store', default=AirQualityAdapter.name,
                          help="api to use with --test-collector: airquality or measuring. Default is 'airquality'")
        parser.add_option('--retention-days', dest='retention_days', action='store',
                          type=int, default=1,
                          help="days of history to fetch with --test-collector. Default is 1")
        parser.add_option('--test-timestamp', dest='timestamp', action='store', metavar='TIMESTAMP',
                          help="normalize a UBA timestamp such as '2020-01-21 24:00:00'")
        (options, args) = parser.parse_args()

        weeutil.logger.setup('uba', {})

        if options.tc:
            if not options.station:
                parser.error('--test-collector requires --station argument')
            test_collector(options.station, options.api, options.retention_days)
        if options.timestamp:
            ts = normalize_timestamp(options.timestamp)
            print('%s -> %d (%s)' % (options.timestamp, ts, timestamp_to_string(ts)))

    def test_collector(station, api, retention_days):
        cfg = configure({'station': station, 'api': api, 'retention_days': retention_days})
        readings = ReadingsStore()
        delay = StationPoller(cfg, readings).run_cycle()
        for name, reading in sorted(readings.snapshot().items()):
            print('%-26s %-16r %s' % (name, reading.value, timestamp_to_string(reading.timestamp)))
        print('next cycle in %d seconds' % delay)

    main()

#!/usr/bin/env python
'''Keep a set of Route 53 A records pointed at this host's public IP

(c) 2017-2025 - Jason Burks https://github.com/jburks725

This program is free software: you can redistribute it and/or modify
it under the terms of the GNU General Public License as published by
the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.

This program is distributed in the hope that it will be useful,
but WITHOUT ANY WARRANTY; without even the implied warranty of
MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
GNU General Public License for more details.

You should have received a copy of the GNU General Public License
along with this program.  If not, see <http://www.gnu.org/licenses/>.
'''
import sys
import os
import re
import json
import time
import smtplib
import argparse
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from email.message import EmailMessage
from enum import Enum
from typing import Optional, Tuple

import requests
import boto3
from botocore.exceptions import BotoCoreError, ClientError
from dotenv import dotenv_values
from tenacity import RetryError, Retrying, retry_if_exception_type, stop_after_attempt, wait_fixed

__version__ = '2.0.0'

# Constants
DEFAULT_TTL = 300
DEFAULT_CONFIG_FILE = 'config.env'
LOG_FORMAT = '%(asctime)s - %(levelname)s: %(message)s'
LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'
LOG_LEVELS = {
    'DEBUG': logging.DEBUG,
    'INFO': logging.INFO,
    'WARN': logging.WARNING,
    'WARNING': logging.WARNING,
    'ERROR': logging.ERROR,
}

_IPV4_RE = re.compile(r'[0-9]{1,3}(\.[0-9]{1,3}){3}')
_OCTAL_ESCAPE_RE = re.compile(r'\\([0-7]{3})')

logger = logging.getLogger('route53update')


class Route53UpdateError(Exception):
    pass


class ConfigError(Route53UpdateError):
    pass


class NoIpAvailable(Route53UpdateError):
    def __init__(self):
        super().__init__('Could not determine public IP from any service')


class HostsFileError(Route53UpdateError):
    pass


class HostsFileNotFound(HostsFileError):
    def __init__(self, path):
        super().__init__(f'Configuration file not found: {path}')
        self.path = path


class InvalidHostsFile(HostsFileError):
    pass


class RemoteDnsError(Route53UpdateError):
    pass


class RetryExhausted(Route53UpdateError):
    def __init__(self, description, attempts, last_error):
        super().__init__(f'{description} failed after {attempts} attempts: {last_error}')
        self.attempts = attempts
        self.last_error = last_error


# -- Configuration -----------------------------------------------------------

def _parse_bool(value):
    return value.strip().lower() in ('1', 'true', 'yes', 'y', 'on')


def _parse_int(value, key, minimum=0):
    try:
        number = int(value)
    except ValueError:
        raise ConfigError(f'{key} must be an integer, got {value!r}') from None
    if number < minimum:
        raise ConfigError(f'{key} must be at least {minimum}, got {number}')
    return number


def _parse_float(value, key):
    try:
        number = float(value)
    except ValueError:
        raise ConfigError(f'{key} must be a number, got {value!r}') from None
    if number < 0:
        raise ConfigError(f'{key} must not be negative, got {number}')
    return number


def _parse_log_level(value, key):
    level = value.strip().upper()
    if level not in LOG_LEVELS:
        raise ConfigError(f'{key} must be one of DEBUG, INFO, WARN, ERROR, got {value!r}')
    return 'WARN' if level == 'WARNING' else level


@dataclass(frozen=True)
class Config:
    '''Process-wide settings, built once by load_config() and never mutated'''
    email: str = ''
    enable_email_notifications: bool = False
    hosts_json_file: str = 'hosts.json'
    ip_cache_file: str = '/tmp/route53_current_ip.txt'
    log_file: str = '/var/log/route53_update.log'
    primary_ip_service: str = 'http://checkip.amazonaws.com'
    fallback_ip_services: Tuple[str, ...] = (
        'https://ipinfo.io/ip',
        'https://api.ipify.org',
        'https://icanhazip.com',
    )
    ip_service_timeout: float = 10
    max_retries: int = 3
    retry_delay: float = 5
    log_level: str = 'INFO'
    enable_structured_logging: bool = False
    aws_cli_profile: str = ''
    aws_region: str = ''
    smtp_host: str = 'localhost'
    smtp_port: int = 25
    email_from: str = ''
    skip_unchanged_ip: bool = False

    @property
    def ip_services(self):
        return (self.primary_ip_service,) + tuple(self.fallback_ip_services)


# Override key -> (Config field, parser)
CONFIG_KEYS = {
    'EMAIL': ('email', lambda v, k: v.strip()),
    'ENABLE_EMAIL_NOTIFICATIONS': ('enable_email_notifications', lambda v, k: _parse_bool(v)),
    'HOSTS_JSON_FILE': ('hosts_json_file', lambda v, k: v),
    'IP_CACHE_FILE': ('ip_cache_file', lambda v, k: v),
    'LOG_FILE': ('log_file', lambda v, k: v),
    'PRIMARY_IP_SERVICE': ('primary_ip_service', lambda v, k: v.strip()),
    'FALLBACK_IP_SERVICES': ('fallback_ip_services', lambda v, k: tuple(v.split())),
    'IP_SERVICE_TIMEOUT': ('ip_service_timeout', _parse_float),
    'MAX_RETRIES': ('max_retries', lambda v, k: _parse_int(v, k, minimum=1)),
    'RETRY_DELAY': ('retry_delay', _parse_float),
    'LOG_LEVEL': ('log_level', _parse_log_level),
    'ENABLE_STRUCTURED_LOGGING': ('enable_structured_logging', lambda v, k: _parse_bool(v)),
    'AWS_CLI_PROFILE': ('aws_cli_profile', lambda v, k: v.strip()),
    'AWS_REGION': ('aws_region', lambda v, k: v.strip()),
    'SMTP_HOST': ('smtp_host', lambda v, k: v.strip()),
    'SMTP_PORT': ('smtp_port', lambda v, k: _parse_int(v, k, minimum=1)),
    'EMAIL_FROM': ('email_from', lambda v, k: v.strip()),
    'SKIP_UNCHANGED_IP': ('skip_unchanged_ip', lambda v, k: _parse_bool(v)),
}


def load_config(path=None, overrides=None, environ=None):
    '''Build a Config from defaults, the environment, an optional env-style file and explicit overrides

    Later layers win: defaults, then recognized keys from `environ`
    (os.environ unless given), then the file, then `overrides`.
    Empty values keep the default. A missing file is not an error.
    '''
    environ = os.environ if environ is None else environ
    values = {key: environ[key] for key in CONFIG_KEYS if key in environ}
    if path and os.path.isfile(path):
        values.update(dotenv_values(path))
    if overrides:
        values.update(overrides)

    changes = {}
    for key, raw in values.items():
        if key not in CONFIG_KEYS:
            logger.debug(f"Ignoring unknown configuration key {key}")
            continue
        if raw is None or raw.strip() == '':
            continue
        name, parse = CONFIG_KEYS[key]
        changes[name] = parse(raw, key)
    return replace(Config(), **changes)


# -- Logging -----------------------------------------------------------------

class PlainFormatter(logging.Formatter):
    '''`<ts> - <LEVEL>: <message>`, with WARNING shown as WARN'''
    level_names = {'WARNING': 'WARN'}

    def level_name(self, record):
        return self.level_names.get(record.levelname, record.levelname)

    def format(self, record):
        original = record.levelname
        record.levelname = self.level_name(record)
        try:
            return super().format(record)
        finally:
            record.levelname = original


class JsonFormatter(PlainFormatter):
    '''One JSON object per line with timestamp, level and message'''

    def format(self, record):
        return json.dumps({
            'timestamp': self.formatTime(record, self.datefmt),
            'level': self.level_name(record),
            'message': record.getMessage(),
        })


def setup_logging(config):
    '''Send log lines to the console and append them to the configured log file'''
    if config.enable_structured_logging:
        formatter = JsonFormatter(datefmt=LOG_DATE_FORMAT)
    else:
        formatter = PlainFormatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(LOG_LEVELS[config.log_level])
    logger.propagate = False

    console = logging.StreamHandler()
    console.setFormatter(formatter)
    logger.addHandler(console)

    try:
        file_handler = logging.FileHandler(config.log_file)
    except OSError as e:
        logger.warning(f"Cannot write log file {config.log_file}: {e}. Logging to console only")
    else:
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)


# -- Public IP resolution ----------------------------------------------------

def validate_ip(value):
    '''Return True if value is a dotted-quad IPv4 address'''
    if not isinstance(value, str) or not _IPV4_RE.fullmatch(value):
        return False
    return all(int(octet) <= 255 for octet in value.split('.'))


def fetch_ip(url, timeout):
    '''Fetch the raw body of an IP lookup endpoint, or None if unreachable'''
    try:
        response = requests.get(url, timeout=timeout)
        response.raise_for_status()
    except requests.exceptions.RequestException as e:
        logger.warning(f"Failed to get IP from {url}: {e}")
        return None
    return response.text.strip()


def resolve_public_ip(services, timeout):
    '''Ask each IP service in order and return the first valid address'''
    for url in services:
        logger.debug(f"Trying IP service: {url}")
        ip = fetch_ip(url, timeout)
        if ip is None:
            continue
        if validate_ip(ip):
            logger.debug(f"Got valid IP from {url}: {ip}")
            return ip
        logger.warning(f"Invalid IP format from {url}: {ip!r}")

    logger.error('Could not determine public IP from any service')
    raise NoIpAvailable()


def read_cached_ip(path):
    '''Return the IP stored by the previous run, or None'''
    try:
        with open(path) as cache:
            ip = cache.read().strip()
    except FileNotFoundError:
        return None
    return ip or None


def write_cached_ip(path, ip):
    try:
        with open(path, 'w') as cache:
            cache.write(f"{ip}\n")
    except OSError as e:
        logger.warning(f"Could not write IP cache {path}: {e}")


# -- Desired state -----------------------------------------------------------

class RecordKind(Enum):
    A = 'A'
    AAAA = 'AAAA'
    CAA = 'CAA'
    CNAME = 'CNAME'
    MX = 'MX'
    NS = 'NS'
    PTR = 'PTR'
    SOA = 'SOA'
    SRV = 'SRV'
    TXT = 'TXT'
    UNKNOWN = None

    @classmethod
    def parse(cls, value):
        try:
            return cls(str(value))
        except ValueError:
            return cls.UNKNOWN

    @property
    def managed(self):
        '''Whether this program writes records of this kind'''
        return self is RecordKind.A


@dataclass(frozen=True)
class DesiredRecord:
    name: str
    zone_id: str
    type: str = 'A'
    ttl: int = DEFAULT_TTL

    @property
    def kind(self):
        return RecordKind.parse(self.type)


def _coerce_record(index, entry):
    if not isinstance(entry, dict):
        raise InvalidHostsFile(f"records[{index}] must be an object")

    name = entry.get('name')
    zone_id = entry.get('zone_id')
    if not isinstance(name, str) or not name.strip():
        raise InvalidHostsFile(f"records[{index}] is missing a name")
    if not isinstance(zone_id, str) or not zone_id.strip():
        raise InvalidHostsFile(f"records[{index}] ({name}) is missing a zone_id")

    record_type = entry.get('type')
    if record_type is None:
        record_type = 'A'
    ttl = entry.get('ttl')
    if ttl is None:
        ttl = DEFAULT_TTL
    if isinstance(ttl, float) and ttl.is_integer():
        ttl = int(ttl)
    if isinstance(ttl, bool) or not isinstance(ttl, int) or ttl <= 0:
        raise InvalidHostsFile(f"records[{index}] ({name}) has an invalid ttl: {ttl!r}")

    return DesiredRecord(name=name.strip(), zone_id=zone_id.strip(), type=str(record_type), ttl=ttl)


def load_records(path):
    '''Read the hosts document and return its records in file order'''
    try:
        with open(path) as hosts_file:
            document = json.load(hosts_file)
    except FileNotFoundError:
        raise HostsFileNotFound(path) from None
    except (ValueError, UnicodeDecodeError) as e:
        raise InvalidHostsFile(f"Invalid JSON in {path}: {e}") from None

    if not isinstance(document, dict) or not isinstance(document.get('records'), list):
        raise InvalidHostsFile(f"{path} must contain an object with a 'records' list")

    return [_coerce_record(i, entry) for i, entry in enumerate(document['records'])]


# -- Remote DNS --------------------------------------------------------------

def _fqdn(name):
    return name if name.endswith('.') else f"{name}."


def _unescape_name(name):
    '''Route 53 returns characters such as `*` as octal escapes (`\\052`)'''
    return _OCTAL_ESCAPE_RE.sub(lambda m: chr(int(m.group(1), 8)), name)


class RemoteDnsService(ABC):
    '''Where the published records live'''

    @abstractmethod
    def get_record(self, zone_id, name, kind):
        '''Return the current value of (zone_id, name, kind), or None if there is no such record'''

    @abstractmethod
    def upsert_record(self, zone_id, name, kind, ttl, value, comment):
        '''Create or overwrite (zone_id, name, kind) and return the change status'''


class Route53Service(RemoteDnsService):
    def __init__(self, client):
        self.client = client

    @staticmethod
    def _zone(zone_id):
        return zone_id.split('/')[-1]

    def get_record(self, zone_id, name, kind):
        fqdn = _fqdn(name)
        try:
            response = self.client.list_resource_record_sets(
                HostedZoneId=self._zone(zone_id),
                StartRecordName=fqdn,
                StartRecordType=kind.value,
                MaxItems='1'
            )
        except (ClientError, BotoCoreError) as e:
            raise RemoteDnsError(f"Error calling Route 53 API: {e}") from e

        for record_set in response.get('ResourceRecordSets', []):
            if _unescape_name(record_set['Name']).lower() == fqdn.lower() and record_set['Type'] == kind.value:
                values = record_set.get('ResourceRecords') or [{}]
                return values[0].get('Value')
        return None

    def upsert_record(self, zone_id, name, kind, ttl, value, comment):
        try:
            response = self.client.change_resource_record_sets(
                HostedZoneId=self._zone(zone_id),
                ChangeBatch={
                    'Comment': comment,
                    'Changes': [
                        {
                            'Action': 'UPSERT',
                            'ResourceRecordSet': {
                                'Name': _fqdn(name),
                                'Type': kind.value,
                                'TTL': ttl,
                                'ResourceRecords': [{'Value': value}]
                            }
                        }
                    ]
                }
            )
        except (ClientError, BotoCoreError) as e:
            raise RemoteDnsError(f"Error calling Route 53 API: {e}") from e
        return response['ChangeInfo']['Status']


def create_session(config):
    return boto3.Session(
        profile_name=config.aws_cli_profile or None,
        region_name=config.aws_region or None,
    )


def check_credentials(session):
    '''Fail early if the AWS credentials are missing or rejected'''
    try:
        identity = session.client('sts').get_caller_identity()
    except (ClientError, BotoCoreError) as e:
        raise ConfigError(f"AWS credentials not configured or invalid: {e}") from e
    logger.debug(f"Using AWS account {identity.get('Account')}")


# -- Reconciliation ----------------------------------------------------------

@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    delay: float = 5
    sleep: object = field(default=time.sleep, repr=False, compare=False)

    def call(self, description, func, *args, **kwargs):
        '''Run func until it succeeds or max_attempts RemoteDnsErrors have been raised'''
        def log_attempt(retry_state):
            logger.warning(f"{description} failed (attempt {retry_state.attempt_number}/{self.max_attempts}): "
                           f"{retry_state.outcome.exception()}")
            logger.info(f"Retrying in {self.delay}s...")

        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_fixed(self.delay),
            retry=retry_if_exception_type(RemoteDnsError),
            sleep=self.sleep,
            before_sleep=log_attempt,
        )
        try:
            return retrying(func, *args, **kwargs)
        except RetryError as e:
            attempt = e.last_attempt
            logger.error(f"{description} failed after {attempt.attempt_number} attempts: {attempt.exception()}")
            raise RetryExhausted(description, attempt.attempt_number, attempt.exception()) from None


class Status(Enum):
    SKIPPED = 'skipped-non-A'
    ALREADY_CORRECT = 'already-correct'
    UPDATED = 'updated'
    FAILED = 'failed'


@dataclass(frozen=True)
class Outcome:
    name: str
    status: Status
    old_value: Optional[str] = None
    new_value: Optional[str] = None
    error: Optional[str] = None


def reconcile_record(ip, record, remote, retry):
    if not record.kind.managed:
        logger.info(f"Skipping {record.name} type {record.type} (only A records are updated)")
        return Outcome(record.name, Status.SKIPPED)

    logger.debug(f"Processing record: {record.name} (type: {record.type}, zone: {record.zone_id})")
    try:
        current = retry.call(
            f"Reading {record.name}",
            remote.get_record, record.zone_id, record.name, RecordKind.A)
    except RetryExhausted as e:
        logger.error(f"Failed to read current value of {record.name}")
        return Outcome(record.name, Status.FAILED, new_value=ip, error=str(e))

    if current is None:
        logger.info(f"{record.name}: No existing A record found")
    else:
        logger.debug(f"{record.name}: Current Route 53 IP: {current}")

    if current == ip:
        logger.info(f"{record.name}: Already correct ({ip})")
        return Outcome(record.name, Status.ALREADY_CORRECT, old_value=current, new_value=ip)

    comment = f"Dynamic IP update: {record.name} -> {ip}"
    logger.debug(f"Change comment: {comment}")
    try:
        status = retry.call(
            f"Updating {record.name}",
            remote.upsert_record, record.zone_id, record.name, RecordKind.A, record.ttl, ip, comment)
    except RetryExhausted as e:
        logger.error(f"Failed to update {record.name}")
        return Outcome(record.name, Status.FAILED, old_value=current, new_value=ip, error=str(e))

    logger.info(f"Updated {record.name}: {current or '(new)'} -> {ip} (change status: {status})")
    return Outcome(record.name, Status.UPDATED, old_value=current, new_value=ip)


def reconcile(ip, records, remote, retry=None):
    '''Bring every managed record in `records` to `ip`, one at a time, in order

    A record already holding `ip` is never rewritten. A failure on one record
    is recorded in its Outcome and does not stop the others.
    '''
    retry = retry or RetryPolicy()
    return [reconcile_record(ip, record, remote, retry) for record in records]


# -- Notification ------------------------------------------------------------

class EmailNotifier:
    def __init__(self, config):
        self.enabled = config.enable_email_notifications
        self.recipient = config.email
        self.sender = config.email_from or config.email
        self.host = config.smtp_host
        self.port = config.smtp_port

    def notify(self, subject, body):
        '''Best-effort email; returns True if the message was handed to the SMTP server'''
        if not self.enabled or not self.recipient:
            logger.debug('Email notifications disabled or no email configured')
            return False

        message = EmailMessage()
        message['Subject'] = subject
        message['From'] = self.sender
        message['To'] = self.recipient
        message.set_content(body)
        try:
            with smtplib.SMTP(self.host, self.port, timeout=30) as smtp:
                smtp.send_message(message)
        except (OSError, smtplib.SMTPException) as e:
            logger.warning(f"Failed to send email notification: {e}")
            return False
        return True


def summarize(ip, outcomes, notifier):
    updated = [o.name for o in outcomes if o.status is Status.UPDATED]
    failed = [o.name for o in outcomes if o.status is Status.FAILED]

    if updated:
        summary = '\n'.join([f"Updated {len(updated)} record(s) to {ip}:"] + [f"- {n}" for n in updated])
        logger.info(summary)
        notifier.notify(f"Route53 A-records updated to {ip}", summary)

    if failed:
        summary = '\n'.join([f"Failed to update {len(failed)} record(s):"] + [f"- {n}" for n in failed])
        logger.error(summary)
        notifier.notify('Route53 update failures', summary)

    if not updated and not failed:
        logger.info('No updates required')


# -- Entry point -------------------------------------------------------------

def run(config, remote, notifier=None, sleep=time.sleep):
    '''One batch pass. Returns the process exit code'''
    notifier = notifier or EmailNotifier(config)

    try:
        ip = resolve_public_ip(config.ip_services, config.ip_service_timeout)
    except NoIpAvailable:
        return 1
    logger.info(f"Current public IP: {ip}")

    cached_ip = read_cached_ip(config.ip_cache_file)
    if cached_ip is None:
        logger.info('No cached IP found. Will check all records.')
    elif cached_ip == ip:
        logger.info(f"IP unchanged ({ip}). Checking Route 53 for mismatches...")
    else:
        logger.info(f"IP changed: {cached_ip} -> {ip}")
    if cached_ip != ip:
        write_cached_ip(config.ip_cache_file, ip)

    if config.skip_unchanged_ip:
        logger.warning('SKIP_UNCHANGED_IP is deprecated; out-of-band Route 53 edits will not be corrected')
        if cached_ip == ip:
            logger.info('Skipping Route 53 check because the IP is unchanged')
            return 0

    try:
        records = load_records(config.hosts_json_file)
    except HostsFileError as e:
        logger.error(str(e))
        if isinstance(e, HostsFileNotFound):
            logger.error('Copy hosts.json.example to hosts.json and configure your domains')
        return 1

    if not records:
        logger.warning(f"No records configured in {config.hosts_json_file}")
        return 0

    logger.info(f"Processing {len(records)} record(s)")
    retry = RetryPolicy(max_attempts=config.max_retries, delay=config.retry_delay, sleep=sleep)
    outcomes = reconcile(ip, records, remote, retry)
    summarize(ip, outcomes, notifier)
    return 0


def main(argv=None):
    parser = argparse.ArgumentParser(description='Update Route 53 A records to this host\'s public IP')
    parser.add_argument('-c', '--config', default=DEFAULT_CONFIG_FILE,
                        help=f"Env-style override file (default: {DEFAULT_CONFIG_FILE})")
    parser.add_argument('--hosts', help='Path to the hosts JSON file (overrides HOSTS_JSON_FILE)')
    parser.add_argument('--log-level', help='DEBUG, INFO, WARN or ERROR (overrides LOG_LEVEL)')
    parser.add_argument('--version', action='version', version=f"%(prog)s {__version__}")
    args = parser.parse_args(argv)

    overrides = {}
    if args.hosts:
        overrides['HOSTS_JSON_FILE'] = args.hosts
    if args.log_level:
        overrides['LOG_LEVEL'] = args.log_level

    try:
        config = load_config(args.config, overrides)
    except ConfigError as e:
        logging.basicConfig(format=LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
        logger.error(f"Invalid configuration: {e}")
        return 1

    setup_logging(config)
    logger.info('Starting Route53 Dynamic IP Update')

    try:
        session = create_session(config)
        check_credentials(session)
    except (ConfigError, BotoCoreError) as e:
        logger.error(str(e))
        return 1

    exit_code = run(config, Route53Service(session.client('route53')))
    if exit_code == 0:
        logger.info('Route53 Dynamic IP Update completed')
    return exit_code


if __name__ == "__main__":
    sys.exit(main())

#!/usr/bin/env python
# -*- coding: utf-8 -*-

"""entrair: Utils!
Logging, config, endpoint and date helpers shared by every module.
"""

import configparser
import json
import logging
import os
import sys
import pytz

from datetime import datetime, timedelta
from logging import handlers
import dateutil.parser

from colored import attr, fg

utc = pytz.UTC

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s (%(filename)s:%(lineno)d)"

class CustomFormatter(logging.Formatter):
    """Console formatter that colors each record by level"""

    COLORS = {
        logging.DEBUG: fg('blue'),
        logging.INFO: fg('light_gray'),
        logging.WARNING: fg('yellow'),
        logging.ERROR: fg('red'),
        logging.CRITICAL: fg('red') + attr('bold'),
    }

    def __init__(self, colors=None):
        super().__init__(LOG_FORMAT)
        # plain output on non-posix terminals
        self.colors = (os.name == 'posix') if colors is None else colors

    def format(self, record):
        message = super().format(record)
        if not self.colors or record.levelno not in self.COLORS:
            return message
        return self.COLORS[record.levelno] + message + attr('reset')

class LogLevelFilter(logging.Filter):
    """Pass only records of exactly one level."""
    def __init__(self, level):
        super().__init__()
        self.level = level

    def filter(self, record):
        return record.levelno == self.level

def setup_logger(name, debug, formatter='cli', log_dir=None):
    """Helper function to set up logger.

    Debug records go to debug.log, error records to error.log and everything
    at the active level to the console. Handlers are only attached the first
    time a logger name is seen; later calls just adjust the level.

    :param name: Logger name to grab
    :type name: str
    :param debug: Flag indicating if debug mode is set.
    :type debug: bool
    :param formatter: Custom formatter to use.
    :type formatter: str
    :param log_dir: Directory for debug.log and error.log. Defaults to the working directory.
    :type log_dir: str
    :return: The configured logger
    :rtype: logging.Logger
    """
    logger = logging.getLogger(name)
    level = logging.DEBUG if debug else logging.INFO
    logger.setLevel(level)

    if getattr(logger, '_entrair_configured', False):
        for handler in logger.handlers:
            if isinstance(handler, logging.StreamHandler) and not isinstance(handler, logging.FileHandler):
                handler.setLevel(level)
        return logger

    log_dir = log_dir or os.environ.get('ENTRAIR_LOG_DIR', '.')
    debug_log = os.path.join(log_dir, "debug.log")
    error_log = os.path.join(log_dir, "error.log")

    file_formatter = logging.Formatter(LOG_FORMAT)

    debug_fh = handlers.WatchedFileHandler(debug_log)
    debug_fh.setFormatter(file_formatter)
    debug_fh.addFilter(LogLevelFilter(logging.DEBUG))
    debug_fh.setLevel(logging.DEBUG)

    error_fh = handlers.WatchedFileHandler(error_log)
    error_fh.setFormatter(file_formatter)
    error_fh.addFilter(LogLevelFilter(logging.ERROR))
    error_fh.setLevel(logging.ERROR)

    logger.addHandler(debug_fh)
    logger.addHandler(error_fh)

    # create console handler with the active log level
    ch = logging.StreamHandler()
    ch.setLevel(level)
    if formatter == 'cli':
        ch.setFormatter(CustomFormatter())
    logger.addHandler(ch)

    logger._entrair_configured = True
    return logger

def get_endpoints(us_government=False):
    """
    Return a dictionary of urls for authentication and log pulling based on the tenant type
    """
    urls_dict = {}
    # default endpoints
    urls_dict["graph_api"] = "https://graph.microsoft.com"
    urls_dict["aad_graph_api"] = "https://graph.windows.net"
    urls_dict["authority_api"] = "https://login.microsoftonline.com"
    # If using a gcc high tenant
    if us_government:
        urls_dict["graph_api"] = "https://graph.microsoft.us"
        urls_dict["aad_graph_api"] = "https://graph.microsoftazure.us"
        urls_dict["authority_api"] = "https://login.microsoftonline.us"
    return urls_dict

def config_get(conf, section: str, option: str, logger=None, default=None):
    """Helper function for getting config options from a configparser.

    :param conf: configparser item after reading a config file or string.
    :type conf: configparser.ConfigParser
    :param section: section in config file
    :type section: str
    :param option: option item in config file
    :type option: str
    :param logger: logging context
    :type logger: logger
    :param default: default to return
    :type default: any
    :return: config item based on section and option
    :rtype: any
    """
    r = default
    try:
        r = conf.get(section, option)
    except configparser.NoSectionError:
        err = f"Missing section in config file: {section}. Proceeding."
        logger.warning(err) if logger else print(err)
    except configparser.NoOptionError:
        err = f"Missing option in config file: {option}. Proceeding."
        logger.warning(err) if logger else print(err)
    if r == '' and default is not None:
        r = default
    return r

def config_getbool(conf, section, option, logger=None, default=False):
    value = config_get(conf, section, option, logger, default=str(default))
    return str(value).strip().lower() == 'true'

def config_getint(conf, section, option, logger=None, default=None):
    """Integer option or default. Blank and malformed values fall back to the default."""
    value = config_get(conf, section, option, logger)
    if value is None or str(value).strip() == '':
        return default
    try:
        return int(value)
    except ValueError:
        err = f"Option {option} in section {section} is not an integer: {value}. Using {default}."
        logger.warning(err) if logger else print(err)
        return default

def config_getlist(conf, section, option, logger=None):
    """Comma separated option as a list, blanks dropped, order kept."""
    value = config_get(conf, section, option, logger)
    if not value:
        return []
    return [x.strip() for x in value.split(',') if x.strip()]

def check_output_dir(output_dir, logger):
    if not os.path.exists(output_dir):
        logger.info(f'Output directory "{output_dir}" does not exist. Attempting to create.')
        try:
            os.makedirs(output_dir)
        except OSError as e:
            logger.error(f'Error while attempting to create output directory {output_dir}: {str(e)}')
            raise
    elif not os.path.isdir(output_dir):
        logger.error(f'{output_dir} exists but is not a directory or you do not have permissions to access. Exiting.')
        sys.exit(1)

def now_utc():
    return datetime.now(utc)

def days_ago(days, now=None):
    now = now or now_utc()
    return now - timedelta(days=days)

def odata_datetime(dt):
    """Render a datetime the way $filter expressions expect it."""
    if dt.tzinfo is None:
        dt = utc.localize(dt)
    return dt.astimezone(utc).strftime("%Y-%m-%dT%H:%M:%SZ")

def normalize_timestamp(value):
    """
    Normalize a Graph timestamp to second precision UTC. Returns the value
    untouched if it cannot be parsed.
    """
    if not value:
        return ""
    try:
        return odata_datetime(dateutil.parser.isoparse(value))
    except (ValueError, TypeError):
        return value

def odata_quote(value):
    """Quote a literal for use inside a $filter expression."""
    return "'%s'" % str(value).replace("'", "''")

def write_json_lines(outfile, records):
    with open(outfile, 'w', encoding='utf-8') as f:
        for record in records:
            f.write(json.dumps(record, default=str) + '\n')

def record_no_results(failurefile, name):
    with open(failurefile, 'a+', encoding='utf-8') as f:
        f.write('No output file: ' + name + ' - ' + str(datetime.now()) + '\n')

#!/usr/bin/env python
# -*- coding: utf-8 -*-

"""entrair: Collect!
This module runs the configured reports against an Entra ID tenant.
"""

import configparser
import json
import sys
import time
import requests

from colored import stylize, attr, fg
from entrair.auth import TokenProvider
from entrair.directory_datadumper import DirectoryDataDumper
from entrair.errors import EntraIrError
from entrair.fetch import FetchContext, PaginationDriver, RequestExecutor
from entrair.logs_datadumper import LogsDataDumper
from entrair.utils import *

DUMPERS = (LogsDataDumper, DirectoryDataDumper)

def report_names(dumper=None):
    dumpers = [dumper] if dumper else DUMPERS
    return [x[len('dump_'):] for d in dumpers for x in dir(d) if x.startswith('dump_')]

def parse_config(configfile, all_reports=False, logger=None):
    """
    Read the config and work out which reports are enabled.

    :return: (config, {report name: enabled})
    :rtype: tuple
    """
    config = configparser.ConfigParser()
    config.read(configfile)
    data_calls = {}
    for name in report_names():
        data_calls[name] = all_reports or config_getbool(config, 'reports', name, logger)
    if logger:
        logger.debug(json.dumps(data_calls, indent=2))
    return config, data_calls

def read_credentials(authfile, logger):
    """[auth] appid and clientsecret from the auth file. Both are optional."""
    authconfig = configparser.ConfigParser()
    authconfig.read(authfile)
    appid = config_get(authconfig, 'auth', 'appid', logger) if authconfig.has_section('auth') else None
    secret = config_get(authconfig, 'auth', 'clientsecret', logger) if authconfig.has_section('auth') else None
    return appid or None, secret or None

def build_engine(config, session, debug=False):
    executor = RequestExecutor(session=session,
                               max_retries=config_getint(config, 'variables', 'max_retries', default=5),
                               throttle_delay=config_getint(config, 'variables', 'throttle_delay', default=5),
                               timeout=config_getint(config, 'variables', 'timeout', default=600),
                               debug=debug)
    return PaginationDriver(executor,
                            reset_retries_per_page=config_getbool(config, 'variables', 'reset_retries_per_page'),
                            debug=debug)

def run(config, data_calls, token_provider, output_dir, reports_dir, debug=False, dry_run=False, interactive=False, logger=None):
    """Authenticate, run every enabled report and return the per report results."""
    logger = logger or setup_logger(__name__, debug)
    tenant = config_get(config, 'config', 'tenant', logger)
    login_hint = config_get(config, 'config', 'login_hint', logger) or None
    context = FetchContext(token_provider, tenant, login_hint=login_hint)

    if not dry_run:
        context.authenticate(interactive=interactive)
        logger.info(f"Authenticated to tenant {tenant} as {context.token.account}.")

    results = []
    with requests.Session() as session:
        driver = build_engine(config, session, debug)
        for dumper_class in DUMPERS:
            calls = {k: v for k, v in data_calls.items() if k in report_names(dumper_class)}
            if not any(calls.values()):
                continue
            dumper = dumper_class(output_dir, reports_dir, context, driver, config, debug, dry_run)
            results.extend(dumper.data_dump(calls))
    return results

def collect(config=".conf",
            auth=".auth",
            output_dir="output",
            reports_dir="reports",
            all=False,
            debug=False,
            dry_run=False,
            interactive=False):
    """
    Entra ID incident response collection

    Args:
        config: Path to config file
        auth: File with the application credentials used for authentication
        output_dir: Directory for storing the results
        reports_dir: Directory for storing debugging/informational logs
        all: Run every report regardless of the config
        debug: Enable debug logging
        dry_run: Dry run (do not do any API calls)
        interactive: Allow a browser prompt for delegated authentication
    """
    logger = setup_logger(__name__, debug)

    check_output_dir(output_dir, logger)
    check_output_dir(reports_dir, logger)
    conf, data_calls = parse_config(config, all, logger)

    tenant = config_get(conf, 'config', 'tenant', logger)
    if not tenant:
        logger.error("No tenant set in the config file. Please run conf or edit the file and try again.")
        sys.exit(1)

    appid, secret = read_credentials(auth, logger)
    client_id = appid or config_get(conf, 'config', 'client_id', logger) or None
    token_provider = TokenProvider(tenant,
                                   client_id=client_id,
                                   client_secret=secret,
                                   us_government=config_getbool(conf, 'config', 'us_government', logger),
                                   login_hint=config_get(conf, 'config', 'login_hint', logger) or None,
                                   debug=debug)

    logger.info("Beginning collection.")
    seconds = time.perf_counter()
    try:
        results = run(conf, data_calls, token_provider, output_dir, reports_dir, debug, dry_run, interactive, logger)
    except EntraIrError as e:
        logger.error(f"Could not authenticate: {str(e)}")
        sys.exit(1)

    error_occured = False
    for class_name, func_name, err in results:
        if err:
            logger.error(stylize(f"[{class_name}] {func_name[5:]}: Failed with error {err}", fg('red')))
            error_occured = True
        else:
            logger.info(stylize(f"[{class_name}] {func_name[5:]}: Success", fg('green') + attr('bold')))
    elapsed = time.perf_counter() - seconds
    logger.info("Collection executed in {0:0.2f} seconds.".format(elapsed))
    if error_occured:
        sys.exit(1)

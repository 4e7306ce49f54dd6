#!/usr/bin/env python
# -*- coding: utf-8 -*-

"""entrair: generate_conf
This script creates a blank configuration file to use.
"""
import configparser
import getpass
import fire
from docstring_parser import parse
from entrair.utils import *

from entrair.directory_datadumper import DirectoryDataDumper
from entrair.logs_datadumper import LogsDataDumper

# Written when an option is neither passed nor already in the config
DEFAULTS = {
    "config": {"us_government": False, "api_version": "beta"},
    "filters": {"privileged_only": False, "signin_status": "all", "inactive_days": 30},
    "variables": {"max_retries": 5, "throttle_delay": 5, "timeout": 600, "reset_retries_per_page": False},
}

def genconfstring(args, docstring_params, section_name, prefix, config_dict=None):
    """
    Render one INI section from every argument named ``<prefix><option>``.
    Unset arguments fall back to the value already in ``config_dict``, then
    to DEFAULTS.
    """
    existing = dict(DEFAULTS.get(section_name, {}))
    existing.update((config_dict or {}).get(section_name, {}))
    lines = [f"[{section_name}]"]
    for arg_key, val in args.items():
        if not arg_key.startswith(prefix):
            continue
        option = arg_key[len(prefix):]
        if val is None:
            val = existing.get(option, "")
        if arg_key in docstring_params:
            lines.append(f"# {docstring_params[arg_key]}")
        lines.append(f"{option}={val}")
    return "\n".join(lines) + "\n\n"

def genconf(outpath_auth=".auth",
            outpath_conf=".conf",
            auth_appid=None,
            auth_clientsecret=None,
            config_tenant=None,
            config_us_government=None,
            config_api_version=None,
            config_client_id=None,
            config_login_hint=None,
            filters_range_from_days_ago=None,
            filters_range_to_days_ago=None,
            filters_user_ids=None,
            filters_service_principal_ids=None,
            filters_role_names=None,
            filters_privileged_only=None,
            filters_domain_names=None,
            filters_signin_status=None,
            filters_audit_result=None,
            filters_audit_category=None,
            filters_policy_state=None,
            filters_inactive_days=None,
            variable_max_retries=None,
            variable_throttle_delay=None,
            variable_timeout=None,
            variable_reset_retries_per_page=None,
            reports=False,
            dict_config={},
            new=False,
            app_only=False,
            debug=False):
    """
    Generate Configuration Files for entrair

    Args:
        outpath_auth: Path to output the auth config
        outpath_conf: Path to output the entrair config
        auth_appid: The application ID of your service principal. Leave empty to sign in as a user
        auth_clientsecret: The client secret value of your service principal. WARNING should not be provided in conf arguments unless doing testing
        config_tenant: The tenant ID of your Entra ID tenant
        config_us_government: If you have a US government (GCC High) tenant
        config_api_version: Microsoft Graph version to query, beta or v1.0
        config_client_id: Public client ID for delegated sign in. Defaults to Microsoft Graph PowerShell
        config_login_hint: User principal name to sign in with for delegated authentication
        filters_range_from_days_ago: Newest end of the log window in days before now. Must be lower than range_to_days_ago
        filters_range_to_days_ago: Oldest end of the log window in days before now
        filters_user_ids: Comma separated user object IDs for sign in, audit and MFA reports. Empty for all users
        filters_service_principal_ids: Comma separated service principal object IDs for the permissions report. Empty for all
        filters_role_names: Comma separated directory role names for the role assignment report. Empty for all
        filters_privileged_only: Only report privileged directory roles
        filters_domain_names: Comma separated domain names for the domains report. Empty for all
        filters_signin_status: all, success or failure
        filters_audit_result: success, failure or timeout. Empty for all
        filters_audit_category: Audit category such as UserManagement or ApplicationManagement. Empty for all
        filters_policy_state: enabled, disabled or enabledForReportingButNotEnforced. Empty for all
        filters_inactive_days: Days without a sign in before a user is reported as inactive
        variable_max_retries: Failed requests tolerated per report before giving up. Throttling does not count
        variable_throttle_delay: Seconds to wait after the API throttles a request
        variable_timeout: Seconds before a single request times out
        variable_reset_retries_per_page: Give every page its own retry budget instead of one per report
        reports: Enable all reports
        dict_config: dictionary of config values you want to set. Will only update valid config parameters. e.g. {"reports": {"signins": True}}
        new: Overwrite the existing config. Default will not overwrite existing configs, but will update config info if out of date
        app_only: Prompt for application credentials when they are not given
        debug: Enable debug logging
    """
    # Grab arguments as a dictionary object
    args = locals()
    # parse the docstring for arguments so they can be used as comments
    docstring = parse(genconf.__doc__)

    logger = setup_logger(__name__, args["debug"])

    # Generate dictionary of descriptions for each parameter
    docstring_params = {}
    for param in docstring.params:
        docstring_params[param.arg_name] = param.description

    if not os.path.isfile(outpath_auth):
        if app_only and not args["auth_appid"]:
            args["auth_appid"] = input("Enter the App ID for the application: ")
        if args["auth_appid"] and not args["auth_clientsecret"]:
            args["auth_clientsecret"] = getpass.getpass("Enter the Client Secret for the application: ")

        auth_s = genconfstring(args, docstring_params, "auth", "auth_")
        with open(outpath_auth, 'w') as f:
            f.write(auth_s)
        logger.debug("auth config created")
    else:
        logger.debug("Auth file already exists")

    if not new:
        old_config = configparser.ConfigParser()
        old_config.read(outpath_conf)
        old_dict_config = {s: dict(old_config.items(s, raw=True)) for s in old_config.sections()}
        # merge in dict_config from parameters
        for key in dict_config:
            old_dict_config.setdefault(key, {}).update(dict_config[key])
        dict_config = old_dict_config

    # Generate the main config
    conf_s = genconfstring(args, docstring_params, "config", "config_", dict_config)
    conf_s += genconfstring(args, docstring_params, "filters", "filters_", dict_config)
    conf_s += genconfstring(args, docstring_params, "variables", "variable_", dict_config)

    # One switch per dump method, commented with its docstring
    func_args = {}
    dumper_docstrings = {}
    for dumper in (LogsDataDumper, DirectoryDataDumper):
        for func_name in [x for x in dir(dumper) if x.startswith('dump_')]:
            report = func_name[len("dump_"):]
            func_args[func_name] = True if args["reports"] else dict_config.get("reports", {}).get(report, False)
            docs = parse(getattr(dumper, func_name).__doc__)
            if docs.short_description:
                dumper_docstrings[func_name] = docs.short_description
    conf_s += genconfstring(func_args, dumper_docstrings, "reports", "dump_", dict_config)

    with open(outpath_conf, 'w') as f:
        f.write(conf_s)
    logger.info(f"Wrote config to {outpath_conf}")

if __name__ == "__main__":
    fire.Fire(genconf)

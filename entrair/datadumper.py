#!/usr/bin/env python
# -*- coding: utf-8 -*-

from entrair.errors import EntraIrError
from entrair.fetch import Query
from entrair.utils import *

class DataDumper(object):
    """
    Base for the report dumpers. Subclasses expose ``get_<report>`` methods
    returning projected records and ``dump_<report>`` methods that read
    their filters from the config and write the records out.
    """
    def __init__(self, output_dir: str, reports_dir: str, context, driver, config, debug=False, dry_run=False):
        self.output_dir = output_dir
        self.reports_dir = reports_dir
        self.context = context
        self.driver = driver
        self.executor = driver.executor
        self.config = config
        self.dry_run = dry_run
        self.logger = setup_logger(__name__, debug)
        self.failurefile = os.path.join(reports_dir, '_no_results.json')
        us_government = config_getbool(config, 'config', 'us_government', self.logger)
        api_version = config_get(config, 'config', 'api_version', self.logger, default='beta')
        self.base_url = f"{get_endpoints(us_government)['graph_api']}/{api_version}/"
        self._lookup_cache = {}

    def get_url(self, path=''):
        return self.base_url + path

    def data_dump(self, calls) -> list:
        """
        Run each requested report in turn.

        :param calls: report names mapped to whether they are enabled
        :type calls: dict
        :return: (dumper class name, method name, error or None) per report
        :rtype: list
        """
        results = []
        self.logger.debug("Called data_dump in DataDumper")
        for key in calls:
            if not calls[key]:
                continue
            func = getattr(self, 'dump_' + key, None)
            if func is None:
                self.logger.debug("Did not find %s in dumper" % (key))
                continue
            if self.dry_run:
                self.logger.info("[DRY RUN] Calling %s" % (func.__name__))
                results.append((self.__class__.__name__, func.__name__, None))
                continue
            self.logger.debug("Calling %s" % (func.__name__))
            results.append(self.func_wrapper(func))
        return results

    def func_wrapper(self, func):
        error = None
        try:
            func()
        except Exception as e:
            self.logger.debug(f"{func.__name__} Failed with error {e}", exc_info=1)
            error = e
        return self.__class__.__name__, func.__name__, error

    def normalize_day_range(self, range_from_days_ago, range_to_days_ago):
        """
        Make sure the window is not empty. Ranges count backwards from now, so
        ``range_to_days_ago`` is the older bound and must exceed
        ``range_from_days_ago``. A bad pair is corrected, never rejected.

        :return: (range_from_days_ago, range_to_days_ago)
        :rtype: tuple
        """
        if range_from_days_ago is not None and range_to_days_ago is not None \
           and range_from_days_ago >= range_to_days_ago:
            self.logger.warning(f"RangeFromDaysAgo ({range_from_days_ago}) must be lower than RangeToDaysAgo ({range_to_days_ago}). "
                                f"Setting RangeToDaysAgo to {range_from_days_ago + 1}.")
            range_to_days_ago = range_from_days_ago + 1
        return range_from_days_ago, range_to_days_ago

    def date_filter(self, field, range_from_days_ago, range_to_days_ago, now=None):
        """$filter clause limiting ``field`` to the day range, or None when no range is set."""
        range_from_days_ago, range_to_days_ago = self.normalize_day_range(range_from_days_ago, range_to_days_ago)
        clauses = []
        if range_to_days_ago is not None:
            clauses.append('%s ge %s' % (field, odata_datetime(days_ago(range_to_days_ago, now))))
        if range_from_days_ago is not None:
            clauses.append('%s le %s' % (field, odata_datetime(days_ago(range_from_days_ago, now))))
        return ' and '.join(clauses) or None

    def renew_token(self):
        """
        Silent token request ahead of each query. The provider returns its
        cached token until that nears expiry, then renews it.
        """
        self.context.authenticate()

    def fetch(self, query, projection=None, consistency=False):
        """Every page of one query, with the token renewed first."""
        self.renew_token()
        context = self.context.with_consistency() if consistency else self.context
        return self.driver.fetch_all(context, query, projection)

    def fetch_each(self, ids, build_query, projection=None, consistency=False):
        """
        One fetch per identifier, results concatenated in input order. With no
        identifiers a single query is built with None.
        """
        records = []
        for object_id in (ids or [None]):
            query = build_query(object_id)
            self.logger.debug(f"Fetching {query.url} filter={query.filter}")
            records.extend(self.fetch(query, projection, consistency))
        return records

    def lookup(self, path, select=None):
        """
        Single object lookup used to enrich records. Failures give an empty
        dict so the record is kept with blank fields.
        """
        url = Query(self.get_url(path), select=select).to_url()
        if url in self._lookup_cache:
            return self._lookup_cache[url]
        try:
            self.renew_token()
            page = self.executor.get(self.context, url)
            result = page.records[0] if page.records else {}
        except EntraIrError as e:
            self.logger.debug(f"Lookup of {path} failed: {str(e)}")
            result = {}
        self._lookup_cache[url] = result
        return result

    def lookup_all(self, path, select=None):
        """Like lookup, for endpoints that return a collection. Follows every page."""
        url = Query(self.get_url(path), select=select).to_url()
        key = ("all", url)
        if key in self._lookup_cache:
            return self._lookup_cache[key]
        try:
            result = self.fetch(url)
        except EntraIrError as e:
            self.logger.debug(f"Lookup of {path} failed: {str(e)}")
            result = []
        self._lookup_cache[key] = result
        return result

    def write_records(self, name, records):
        outfile = os.path.join(self.output_dir, name + '.json')
        if not records:
            self.logger.debug('%s has no information (size is 0). No output file.' % (outfile))
            record_no_results(self.failurefile, name)
            return None
        write_json_lines(outfile, records)
        self.logger.info(f"Wrote {len(records)} records to {outfile}")
        return outfile

    def filter_ids(self, option):
        return config_getlist(self.config, 'filters', option, self.logger)

    def day_range(self):
        range_from = config_getint(self.config, 'filters', 'range_from_days_ago', self.logger)
        range_to = config_getint(self.config, 'filters', 'range_to_days_ago', self.logger)
        return range_from, range_to

#!/usr/bin/env python
# -*- coding: utf-8 -*-

"""entrair: Entra ID incident response collector
"""

__version__ = '1.0.0'

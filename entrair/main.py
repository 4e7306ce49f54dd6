#!/usr/bin/env python
# -*- coding: utf-8 -*-

"""entrair: Main!
"""

import fire

from entrair.collect import collect
from entrair.conf import genconf
import entrair


def version():
    """
    Display the version
    """
    print(f"entrair Version {entrair.__version__}")


def main():
    fire.Fire({"collect": collect,
               "conf": genconf,
               "--version": version})

if __name__ == "__main__":
    main()

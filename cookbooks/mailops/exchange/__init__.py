"""Exchange transport nodes cookbooks"""

__title__ = __doc__

"""Mail operations cookbooks"""

__title__ = __doc__

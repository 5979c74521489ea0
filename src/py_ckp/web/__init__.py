"""HTTP status and control API for one project.

This package provides a Flask application over the kernel manager,
evidence store and edge router.  It is an **optional** extra — install
with::

    pip install py-ckp[web]
"""

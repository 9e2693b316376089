"""Entry point wrapper for ``python -m harmony_trainer``.

Execution is forwarded to :func:`harmony_trainer.main` so running the module
and the installed ``harmony-trainer`` console script behave identically.

Example
-------
::

    python -m harmony_trainer generate --key D --range soprano --seed 3
"""

from . import main

if __name__ == "__main__":
    main()

"""Allow running as `python -m kobo_proxy`."""

from kobo_proxy.cli import main_entry

if __name__ == "__main__":
    main_entry()

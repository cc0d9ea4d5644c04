import os

# Must be set before config.get_settings() is first called.
os.environ["APP_ENV"] = "testing"

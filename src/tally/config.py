from dynaconf import Dynaconf
import os

settings = Dynaconf(
    envvar_prefix="TALLY",
    settings_files=[
        os.path.join(os.path.dirname(__file__), "settings.json"),
    ],
    load_dotenv=True,
    merge_enabled=True,
)

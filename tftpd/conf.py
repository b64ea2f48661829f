import os
import typing
import logging
from argparse import ArgumentParser
from appdirs import user_data_dir
import yaml
from tftpd import constants

log = logging.getLogger(__name__)


NOT_SET = type('NOT_SET', (object,), {})  # pylint: disable=invalid-name
T = typing.TypeVar('T')


class Setting(typing.Generic[T]):

    def __init__(self, doc: str, default: typing.Optional[T] = None,
                 previous_names: typing.Optional[typing.List[str]] = None,
                 metavar: typing.Optional[str] = None):
        self.doc = doc
        self.default = default
        self.previous_names = previous_names or []
        self.metavar = metavar

    def __set_name__(self, owner, name):
        self.name = name  # pylint: disable=attribute-defined-outside-init

    @property
    def cli_name(self):
        return f"--{self.name.replace('_', '-')}"

    @property
    def env_name(self):
        return f"{EnvironmentAccess.PREFIX}{self.name.upper()}"

    def __get__(self, obj: typing.Optional['BaseConfig'], owner) -> T:
        if obj is None:
            return self
        for location in obj.search_order:
            if self.name in location:
                return location[self.name]
        return self.default

    def __set__(self, obj: 'BaseConfig', val: typing.Union[T, NOT_SET]):
        # assignments only ever land in the runtime layer
        if val is NOT_SET:
            obj.runtime.pop(self.name, None)
        else:
            self.validate(val)
            obj.runtime[self.name] = val

    def validate(self, value):
        raise NotImplementedError()

    def deserialize(self, value):  # pylint: disable=no-self-use
        return value

    def contribute_to_argparse(self, parser: ArgumentParser):
        parser.add_argument(
            self.cli_name,
            help=f"{self.doc} (env: {self.env_name})",
            metavar=self.metavar,
            default=NOT_SET
        )


class String(Setting[str]):
    def validate(self, value):
        assert isinstance(value, str), \
            f"Setting '{self.name}' must be a string."


class Integer(Setting[int]):
    def validate(self, value):
        assert isinstance(value, int), \
            f"Setting '{self.name}' must be an integer."

    def deserialize(self, value):
        return int(value)


class Port(Integer):
    def validate(self, value):
        super().validate(value)
        assert 0 <= value <= 65535, \
            f"Setting '{self.name}' must be a port number between 0 and 65535."


class Float(Setting[float]):
    def validate(self, value):
        assert isinstance(value, float), \
            f"Setting '{self.name}' must be a decimal."

    def deserialize(self, value):
        return float(value)


class Path(String):
    def __init__(self, doc: str, *args, default: str = '', **kwargs):
        super().__init__(doc, default, *args, **kwargs)

    def __get__(self, obj, owner) -> str:
        value = super().__get__(obj, owner)
        if isinstance(value, str):
            return os.path.expanduser(os.path.expandvars(value))
        return value


class SettingSource:
    """
    One layer of configuration values, keyed by setting name.
    """

    def __init__(self, config: 'BaseConfig'):
        self.configuration = config
        self.data = {}

    def collect(self, lookup: typing.Callable[[Setting], typing.Any]):
        for setting in self.configuration.get_settings():
            value = lookup(setting)
            if value is not NOT_SET:
                value = setting.deserialize(value)
                setting.validate(value)
                self.data[setting.name] = value

    def __contains__(self, item: str):
        return item in self.data

    def __getitem__(self, item: str):
        return self.data[item]


class EnvironmentAccess(SettingSource):
    PREFIX = 'TFTPD_'

    def __init__(self, config: 'BaseConfig', environ: typing.Mapping[str, str]):
        super().__init__(config)
        if environ:
            self.collect(lambda setting: environ.get(setting.env_name, NOT_SET))


class ArgumentAccess(SettingSource):

    def __init__(self, config: 'BaseConfig', args):
        super().__init__(config)
        if args:
            self.collect(lambda setting: getattr(args, setting.name, NOT_SET))


class ConfigFileAccess(SettingSource):
    """
    Settings read from a YAML file. Keys under a setting's previous name are read into the
    current name, `save` writes the file back out under the current names.
    """

    def __init__(self, config: 'BaseConfig', path: str):
        super().__init__(config)
        self.path = path
        self.renamed: typing.List[str] = []
        if self.exists:
            self.load()

    @property
    def exists(self):
        return bool(self.path) and os.path.exists(self.path)

    def load(self):
        with open(self.path, 'r') as config_file:
            serialized = yaml.safe_load(config_file) or {}
        for key, value in serialized.items():
            setting = self.configuration.find_setting(key)
            if setting is None:
                log.warning("ignoring unknown setting '%s' in %s", key, self.path)
                continue
            if key != setting.name:
                self.renamed.append(key)
            value = setting.deserialize(value)
            setting.validate(value)
            self.data[setting.name] = value

    def save(self):
        with open(self.path, 'w') as config_file:
            config_file.write(yaml.safe_dump(self.data, default_flow_style=False))


TBC = typing.TypeVar('TBC', bound='BaseConfig')


class BaseConfig:

    config = Path("Path to configuration file.", metavar='FILE')

    def __init__(self, **kwargs):
        self.runtime = {}      # set internally or by tests
        self.arguments = {}    # from command line arguments
        self.environment = {}  # from environment variables
        self.persisted = {}    # from config file
        for key, value in kwargs.items():
            setattr(self, key, value)

    @property
    def search_order(self):
        return [
            self.runtime,
            self.arguments,
            self.environment,
            self.persisted
        ]

    @classmethod
    def get_settings(cls):
        for attr in dir(cls):
            setting = getattr(cls, attr)
            if isinstance(setting, Setting):
                yield setting

    @classmethod
    def find_setting(cls, name: str) -> typing.Optional[Setting]:
        for setting in cls.get_settings():
            if name == setting.name or name in setting.previous_names:
                return setting
        return None

    @classmethod
    def create_from_arguments(cls, args) -> TBC:
        conf = cls()
        conf.set_arguments(args)
        conf.set_environment()
        conf.set_persisted()
        return conf

    @classmethod
    def contribute_to_argparse(cls, parser: ArgumentParser):
        for setting in cls.get_settings():
            setting.contribute_to_argparse(parser)

    def set_arguments(self, args):
        self.arguments = ArgumentAccess(self, args)

    def set_environment(self, environ=None):
        self.environment = EnvironmentAccess(self, environ or os.environ)

    def set_persisted(self, config_file_path=None):
        if config_file_path is None:
            config_file_path = self.config

        if not config_file_path:
            return

        ext = os.path.splitext(config_file_path)[1]
        assert ext in ('.yml', '.yaml'),\
            f"File extension '{ext}' is not supported, " \
            f"configuration file must be in YAML (.yaml)."

        self.persisted = ConfigFileAccess(self, config_file_path)
        if self.persisted.renamed:
            log.info("renaming settings %s in %s", ', '.join(self.persisted.renamed), config_file_path)
            self.persisted.save()


class Config(BaseConfig):
    # directories
    data_dir = Path("Directory path to store logs and settings.", metavar='DIR')
    root_dir = Path(
        "Directory path of the files served to clients, defaults to a 'files' directory in data_dir.",
        previous_names=['tftp_root'], metavar='DIR'
    )

    # network
    interface = String("Interface to listen for read requests on.", '0.0.0.0', metavar='HOST')
    udp_port = Port("UDP port to listen for read requests on.", constants.TFTP_PORT, metavar='PORT')
    max_sessions = Integer("Maximum number of transfers in progress at once (0 for no limit).", 0)

    # transfers
    timeout = Float(
        "Seconds to wait for a datagram from a client before the transfer is abandoned.", constants.SOCKET_TIMEOUT
    )
    max_sync_tries = Integer(
        "Out of sync acknowledgments tolerated in a row before the transfer is abandoned.",
        constants.MAX_SYNC_TRIES
    )
    resync_delay = Float(
        "Seconds to pause before discarding queued datagrams and resending a block.", constants.RESYNC_FLUSH_DELAY
    )

    # metrics
    prometheus_port = Port("Port to expose prometheus metrics on (0 to disable).", 0, metavar='PORT')

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.set_default_paths()

    def set_default_paths(self):
        cls = type(self)
        cls.data_dir.default = user_data_dir('tftpd')
        cls.config.default = os.path.join(self.data_dir, 'tftpd.yml')

    @property
    def served_dir(self):
        return self.root_dir or os.path.join(self.data_dir, 'files')

    @property
    def log_file_path(self):
        return os.path.join(self.data_dir, 'tftpd.log')

import os
import platform

from configobj import ConfigObj, ConfigObjError, flatten_errors
from validate import Validator

from sockfwd.connector.base import ConfigError
from sockfwd.forwarder import ForwardConfig

# The default extension for configuration files
config_extension = '.cfg'

# the base name of the forwarder's configuration files
config_name = 'sockfwd'

# the section holding the forwarder settings
forwarder_section = 'forwarder'

package_directory = os.path.dirname(os.path.abspath(__file__))


def config_flavor(name, flavor=None):
    configname = name if not flavor else name + '.' + flavor
    return configname


def config_filename(name, directory=None):
    """
    Determines the location of a config file in the given directory.
    """
    config_file = os.path.join(directory, name + config_extension)
    return config_file


def load_config_file_base(file, must_exist=True):
    """
    Loads a configuration file
    :param file:        The configuration file to load
    :param must_exist:  when True, the file must exist or an exception is thrown.
    :return: The ConfigObj instance for the file.
    """
    try:
        return ConfigObj(file, interpolation='Template', file_error=must_exist) \
            if must_exist or os.path.exists(file) else ConfigObj()
    except ConfigObjError as e:
        raise type(e)(str(e) + ' at ' + file)


def config_flavor_file(name, directory, subpart=None) -> ConfigObj:
    """
    Loads a specialization of a config file. The configuration file is expected to be named
    after the base, followed by a period and then the specialization, if the specialization is given,
    otherwise just the base name. A missing file gives an empty configuration.
    :param name:    The name of the base configuration
    :param subpart: The name of the specialization.
    :return: The ConfigObj for the configuration file.
    """
    configname = config_flavor(name, subpart)
    file = config_filename(configname, directory)
    config = load_config_file_base(file, False)
    return config


def map_os_name(name):
    """
    >>> map_os_name('Windows')
    'windows'
    >>> map_os_name("Darwin")
    'osx'
    """
    name = name.lower()
    if name == 'darwin':
        name = 'osx'
    return name


def os_name():
    return map_os_name(platform.system())


def user_config_file(name, home=None):
    home = home if home is not None else os.path.expanduser('~')
    return os.path.join(home, name + config_extension)


def load_config(name, directory, extra_files=(), home=None):
    """
        Loads all the configuration files that relate to the given name.
        Configurations are loaded in this order, later files overriding earlier ones:
        - the default specialization
        - the platform specialization
        - the user override in the home directory
        - any extra files, which must exist
        The configurations are flattened into a single configuration, and then validated
        against a configuration specialization "schema".
    :param name: the base name of the configuration to load.
    :param directory: the location of the configuration files
    :param extra_files: explicitly requested configuration files
    :param home: the directory holding the user override. Defaults to the user's home.
    :raises ConfigError: a file could not be read or the merged configuration is not valid
    """
    try:
        layers = [config_flavor_file(name, directory, 'default'),
                  config_flavor_file(name, directory, os_name()),
                  load_config_file_base(user_config_file(name, home), must_exist=False)]
        layers += [load_config_file_base(file) for file in extra_files]
        # the schema is read by ConfigObj itself, which parses check specifications differently
        config = ConfigObj(interpolation='Template',
                           configspec=config_filename(config_flavor(name, 'schema'), directory))
    except (ConfigObjError, IOError) as e:
        raise ConfigError(str(e)) from e

    for layer in layers:
        config.merge(layer)

    result = config.validate(Validator())
    if result is not True:
        problems = []
        for section_list, key, res in flatten_errors(config, result):
            section = ', '.join(section_list)
            if key is not None:
                problems.append('"%s" in section "%s": %s' % (key, section, res or 'missing'))
            else:
                problems.append('missing section "%s"' % section)
        raise ConfigError("the config file %s failed validation: %s" % (name, '; '.join(problems)))
    return config


def fetch_conf_path(conf, path):
    """
    Retrieves the named configuration section
    :param conf:        The root configuration
    :param path:   An iterable that lists the names of the config to resolve
    :return: The configuration object identified by the path
    """
    for p in path:    # lookup specific section
        conf = conf.get(p, None)
        if conf is None:
            return
    return conf


def load_forwarder_settings(config_file=None, directory=package_directory, home=None):
    """
    Loads the forwarder section from the layered configuration.
    :param config_file: an explicit configuration file, applied last
    :return: a dict of setting name to validated value
    """
    extra = [config_file] if config_file else []
    conf = load_config(config_name, directory, extra, home)
    return dict(fetch_conf_path(conf, [forwarder_section]))


def forward_config(settings, **overrides) -> ForwardConfig:
    """
    Builds the forwarder configuration from loaded settings. Overrides that are None are ignored,
    so unset command line options fall through to the file values.
    """
    values = {k: v for k, v in settings.items() if k in ForwardConfig._fields}
    values.update({k: v for k, v in overrides.items() if v is not None and k in ForwardConfig._fields})
    return ForwardConfig(**values)

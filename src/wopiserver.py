#!/usr/bin/env python3
'''
wopiserver.py

The WOPI host serving document editors such as Collabora Online:
exposes the WOPI files endpoints on top of a storage and a token store layer.
'''

import sys
import os
import time
import socket
import configparser
from platform import python_version
import logging
import logging.handlers
import http.client
try:
    import flask                   # Flask app server
    from werkzeug.exceptions import HTTPException
    from prometheus_flask_exporter import PrometheusMetrics    # Prometheus support

except ImportError:
    print("Missing modules, please install dependencies with `pip3 install .`")
    raise

import wopihost.wopi
import wopihost.wopiutils as utils


# the following constant is replaced on the fly when generating the docker image
WOPISERVERVERSION = 'git'

# where the configuration files are looked up, unless overridden by the environment
CONFIGDIR = '/etc/wopi'

# aliases of the storage and token store layer modules, see functions below
storage = None
tokenstore = None


def storage_layer_import(storagetype):
    '''A convenience function to import the storage layer module specified in the config and make it globally available'''
    global storage        # pylint: disable=global-statement
    if storagetype in ['local']:
        storagetype += 'iface'
    else:
        raise ImportError(f'Unsupported/Unknown storage type {storagetype}')
    try:
        storage = __import__('wopihost.' + storagetype, globals(), locals(), [storagetype])
    except ImportError:
        print(f'Missing module when attempting to import {storagetype}.py. Please make sure dependencies are met.')
        raise


def tokenstore_layer_import(tokenstoretype):
    '''Same as above for the token store layer'''
    global tokenstore     # pylint: disable=global-statement
    if tokenstoretype == 'jwt':
        tokenstoretype = 'jwttokens'
    elif tokenstoretype == 'memory':
        tokenstoretype = 'memtokens'
    else:
        raise ImportError(f'Unsupported/Unknown token store type {tokenstoretype}')
    tokenstore = __import__('wopihost.' + tokenstoretype, globals(), locals(), [tokenstoretype])


class Wopi:
    '''A singleton container for all state information of the WOPI host'''
    app = flask.Flask("wopiserver")
    metrics = PrometheusMetrics(app, group_by='endpoint')
    port = 0
    configdir = None
    lastConfigReadTime = time.time()
    loglevels = {"Critical": logging.CRITICAL,  # 50
                 "Error":    logging.ERROR,     # 40
                 "Warning":  logging.WARNING,   # 30
                 "Info":     logging.INFO,      # 20
                 "Debug":    logging.DEBUG      # 10
                 }
    log = utils.JsonLogger(app.logger)

    @classmethod
    def init(cls, config=None):
        '''Initialises the application, bails out in case of failures. Note this is not a __init__ method.
        If a config is given, it is used instead of reading the configuration files.'''
        try:
            # detect hostname, or take it from the environment if set e.g. by docker
            hostname = os.environ.get('HOST_HOSTNAME')
            if not hostname:
                hostname = socket.gethostname()
            # read the configuration
            if config:
                cls.config = config
                cls.configdir = None
            else:
                cls.configdir = os.environ.get('WOPI_CONFIG_DIR', CONFIGDIR)
                cls.config = configparser.ConfigParser()
                with open(os.path.join(cls.configdir, 'wopiserver.defaults.conf')) as fdef:
                    cls.config.read_file(fdef)
                cls.config.read(os.path.join(cls.configdir, 'wopiserver.conf'))
            # configure the logging
            lhandler = cls.config.get('general', 'loghandler', fallback='file').lower()
            if lhandler == 'stream':
                logdest = cls.config.get('general', 'logdest', fallback='stdout').lower()
                if logdest == "stdout":
                    logdest = sys.stdout
                else:
                    logdest = sys.stderr
                loghandler = logging.StreamHandler(logdest)
            else:
                logdest = cls.config.get('general', 'logdest', fallback='/var/log/wopi/wopiserver.log')
                loghandler = logging.FileHandler(logdest)
            loghandler.setFormatter(logging.Formatter(
                fmt='{"time": "%(asctime)s.%(msecs)03d", "host": "'
                + hostname + '", "level": "%(levelname)s", "process": "%(name)s", %(message)s}',
                datefmt='%Y-%m-%dT%H:%M:%S'))
            if cls.config.get('general', 'internalserver', fallback='flask') == 'waitress':
                cls.log.logger.handlers.clear()
                logging.getLogger().handlers = [loghandler]
            else:
                cls.app.logger.handlers = [loghandler]
            cls.log.setLevel(cls.loglevels[cls.config.get('general', 'loglevel')])
            # load the requested storage and token store layers
            storage_layer_import(cls.config.get('general', 'storagetype'))
            tokenstore_layer_import(cls.config.get('general', 'tokenstoretype'))
            # prepare the Flask web app
            cls.port = int(cls.config.get('general', 'port'))
            cls.wopiurl = cls.config.get('general', 'wopiurl').rstrip('/')
            cls.instanceid = cls.config.get('general', 'instanceid')
            cls.tokenvalidity = cls.config.getint('general', 'tokenvalidity')
            cls.watermarktext = cls.config.get('general', 'watermarktext', fallback='')
            cls.blacklistedfiles = cls.config.get('general', 'blacklistedfiles', fallback='.htaccess').split()
            cls.l10n = utils.getTranslation(cls.config)
            _ = cls.config.getint('io', 'chunksize')    # make sure this is defined as an int
            storage.init(cls.config, cls.log)                          # initialize the storage layer
            tokenstore.init(cls.config, cls.log)                       # initialize the token store layer
            cls.useHttps = cls.config.get('security', 'usehttps', fallback='no').lower() == 'yes'
            # validate the certificates exist if running in https mode
            if cls.useHttps:
                try:
                    with open(cls.config.get('security', 'wopicert')) as _:
                        pass
                    with open(cls.config.get('security', 'wopikey')) as _:
                        pass
                except OSError:
                    cls.log.error('msg="Failed to open the provided certificate or key to start in https mode"')
                    raise
            # initialize the submodules
            utils.WOPIVER = WOPISERVERVERSION
            utils.srv = wopihost.wopi.srv = cls
            utils.log = wopihost.wopi.log = cls.log
            utils.ts = wopihost.wopi.ts = tokenstore
            wopihost.wopi.st = storage
        except (configparser.Error, OSError, ValueError, ImportError, KeyError) as e:
            # any error we get here with the configuration is fatal
            cls.log.fatal(f'msg="Failed to initialize the service, aborting" error="{e}"')
            print(f'Failed to initialize the service: {e}\n', file=sys.stderr)
            raise

    @classmethod
    def refreshconfig(cls):
        '''Re-read the configuration file every 300 secs to catch any runtime parameter change'''
        if time.time() > cls.lastConfigReadTime + 300:
            cls.lastConfigReadTime = time.time()
            if cls.configdir:
                cls.config.read(os.path.join(cls.configdir, 'wopiserver.conf'))
            # refresh some general parameters
            cls.tokenvalidity = cls.config.getint('general', 'tokenvalidity')
            cls.watermarktext = cls.config.get('general', 'watermarktext', fallback='')
            cls.log.setLevel(cls.loglevels[cls.config.get('general', 'loglevel')])
            if hasattr(tokenstore, 'purge'):
                tokenstore.purge()

    @classmethod
    def run(cls):
        '''Runs the Flask app in either standalone (https) or embedded (http) mode'''
        cls.app.debug = cls.config.get('general', 'loglevel') == 'Debug'
        cls.app.threaded = True

        if cls.useHttps:
            cls.app.ssl_context = (cls.config.get('security', 'wopicert'), cls.config.get('security', 'wopikey'))
            cls.log.info('msg="WOPI host starting in standalone secure mode" port="%d" wopiurl="%s" version="%s"' %
                         (cls.port, cls.wopiurl, WOPISERVERVERSION))
        else:
            cls.app.ssl_context = None
            cls.log.info('msg="WOPI host starting in unsecure/embedded mode" port="%d" wopiurl="%s" version="%s"' %
                         (cls.port, cls.wopiurl, WOPISERVERVERSION))

        try:
            if cls.config.get('general', 'internalserver', fallback='flask') == 'waitress':
                try:
                    from waitress import serve
                except ImportError:
                    cls.log.fatal('msg="Failed to initialize the service, aborting" error="missing module waitress"')
                    print("Missing module waitress, aborting")
                    raise

                serve(cls.app, host='0.0.0.0', port=cls.port)
            else:
                cls.app.run(host='0.0.0.0', port=cls.port, ssl_context=cls.app.ssl_context)
        except OSError as e:
            cls.log.fatal(f'msg="Failed to run the service, aborting" error="{e}"')
            raise


@Wopi.app.errorhandler(Exception)
def handleException(ex):
    '''Generic method to log any uncaught exception'''
    if isinstance(ex, HTTPException):
        return ex
    return utils.logGeneralExceptionAndReturn(ex, flask.request)


@Wopi.app.route("/", methods=['GET'])
def redir():
    '''A simple redirect to the page below'''
    return flask.redirect("/wopi")


@Wopi.app.route("/wopi", methods=['GET'])
def index():
    '''Return a default index page with some user-friendly information about this service'''
    Wopi.log.debug(f'msg="Accessed index page" client="{flask.request.remote_addr}"')
    resp = flask.Response("""
      <html><head><title>WOPI Host</title></head>
      <body>
      <div align="center" style="color:#000080; padding-top:50px; font-family:Verdana; size:11">
      This is a <a href=https://learn.microsoft.com/en-us/microsoft-365/cloud-storage-partner-program/online/>WOPI</a> host
      to support online office-like editors.<br>
      To use this service, please log in to your storage and click on a supported document.</div>
      <div style="position: absolute; bottom: 10px; left: 10px; width: 99%%;"><hr>
      <i>WOPI host %s at %s. Powered by Flask %s for Python %s.
         Storage type: <span style="font-family:monospace">%s</span>.
         Health status: <span style="font-family:monospace">%s</span>.</i>
      </body>
      </html>
      """ % (WOPISERVERVERSION, socket.getfqdn(), flask.__version__, python_version(),
             Wopi.config.get('general', 'storagetype'), storage.healthcheck()))
    resp.headers['X-Frame-Options'] = 'sameorigin'
    resp.headers['X-XSS-Protection'] = '1; mode=block'
    return resp


#
# WOPI protocol implementation
#
@Wopi.app.route("/wopi/files/<documentid>", methods=['GET'])
def wopiCheckFileInfo(documentid):
    '''The CheckFileInfo WOPI call'''
    sessionOrMsg, httpcode = utils.validateAndLogSession('CheckFileInfo', documentid, http.client.NOT_FOUND)
    if httpcode:
        return sessionOrMsg, httpcode
    return wopihost.wopi.checkFileInfo(sessionOrMsg)


@Wopi.app.route("/wopi/files/<documentid>/contents", methods=['GET'])
def wopiGetFile(documentid):
    '''The GetFile WOPI call'''
    sessionOrMsg, httpcode = utils.validateAndLogSession('GetFile', documentid, http.client.FORBIDDEN)
    if httpcode:
        return sessionOrMsg, httpcode
    return wopihost.wopi.getFile(sessionOrMsg)


@Wopi.app.route("/wopi/files/<documentid>", methods=['POST'])
@Wopi.metrics.counter('wopi_file_operations', 'Number of file-level operations by X-WOPI-Override',
                      labels={'operation': lambda: flask.request.headers.get('X-WOPI-Override', ''),
                              'support': lambda: wopihost.wopi.getOperationSupport(
                                  flask.request.headers.get('X-WOPI-Override', ''))})
def wopiFilesPost(documentid):
    '''A dispatcher method for all POST operations on files'''
    return wopihost.wopi.fileOperation(documentid)


@Wopi.app.route("/wopi/files/<documentid>/contents", methods=['POST'])
def wopiPutFile(documentid):
    '''The PutFile WOPI call'''
    sessionOrMsg, httpcode = utils.validateAndLogSession('PutFile', documentid, http.client.FORBIDDEN)
    if httpcode:
        return sessionOrMsg, httpcode
    return wopihost.wopi.putFile(sessionOrMsg)


#
# Start the app endless listening loop
#
if __name__ == '__main__':
    Wopi.init()
    Wopi.run()

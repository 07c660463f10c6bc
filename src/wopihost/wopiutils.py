'''
wopiutils.py

General low-level functions to support the WOPI host.
'''

import sys
import time
import traceback
import json
import gettext
from enum import IntFlag
from collections import namedtuple
from datetime import datetime, timezone
from email.utils import parseaddr
import http.client
import flask

# headers used by the WOPI clients to pass the last known modification time on PutFile
TIMESTAMPHEADERS = ('X-COOL-WOPI-Timestamp', 'X-LOOL-WOPI-Timestamp')

# signifies to the WOPI client that the document has been changed externally in the storage
LOOL_STATUS_DOC_CHANGED = 1010

# header used by reverse proxies such as traefik to pass the real remote IP address
REALIPHEADER = 'X-Real-IP'

# placeholder in the watermark template
WATERMARKPLACEHOLDER = '{viewer-email}'

# convenience references to global entities
ts = None
srv = None
log = None
WOPIVER = None


class Attributes(IntFlag):
    '''The permissions carried by a WOPI session, as independent flags'''
    CAN_VIEW = 1
    CAN_UPDATE = 2
    CAN_PRINT = 4
    CAN_EXPORT = 8
    HAS_WATERMARK = 16


# the attributes of a session created by a PutRelative (save as) operation:
# export and watermark are intentionally not propagated from the original session
SAVEAS_ATTRIBUTES = Attributes.CAN_VIEW | Attributes.CAN_UPDATE | Attributes.CAN_PRINT


SessionRecord = namedtuple('SessionRecord', ['token', 'fileid', 'version', 'owner', 'editor',
                                             'attributes', 'serverhost', 'expiration'])
SessionRecord.__doc__ = '''An authorized editing session, as resolved from an access token.
`editor` is None for federated or public-link (remote) access.'''


KnownEditor = namedtuple('KnownEditor', ['userid', 'displayname', 'email'])
KnownEditor.__doc__ = 'An editor known to the user directory. email may be None'

AnonymousEditor = namedtuple('AnonymousEditor', ['displayname'])
AnonymousEditor.__doc__ = 'An editor without an identity on this host, e.g. a remote user'


class JsonLogger:
    '''A wrapper class in front of a logger, based on the facade pattern'''
    def __init__(self, logger):
        '''Initialization'''
        self.logger = logger

    def __getattr__(self, name):
        '''Facade method'''
        def facade(*args, **kwargs):
            '''internal method returned by __getattr__ and wrapping the original one'''
            if not hasattr(self.logger, name):
                raise NotImplementedError
            if name in ['debug', 'info', 'warning', 'error', 'critical', 'fatal']:
                # resolve the calling module
                f = traceback.extract_stack()[-2].filename
                m = f[f.rfind('/') + 1:f.rfind('.')]
                try:
                    # as we use a `key="value" ...` format in all logs, we only have args[0]
                    payload = f'module="{m}" {args[0]} '
                    # convert the payload to a dictionary assuming no `="` nor `" ` is present inside any key or value;
                    # the trailing space matches the `" ` split, so the last element of that list is dropped
                    payload = dict([tuple(kv.split('="')) for kv in payload.split('" ')[:-1]])
                    payload = str(json.dumps(payload))[1:-1]
                except Exception:    # pylint: disable=broad-except
                    # the above assumptions do not hold, json-escape the original log
                    payload = f'"module": "{m}", "payload": {json.dumps(args[0])}'
                args = (payload,)
            return getattr(self.logger, name)(*args, **kwargs)
        return facade


def logGeneralExceptionAndReturn(ex, req):
    '''Convenience function to log a stack trace and return HTTP 500'''
    ex_type, ex_value, ex_traceback = sys.exc_info()
    log.critical('msg="Unexpected exception caught" exception="%s" type="%s" traceback="%s" client="%s" requestedUrl="%s"' %
                 (ex, ex_type, traceback.format_exception(ex_type, ex_value, ex_traceback),
                  req.headers.get(REALIPHEADER, req.remote_addr), req.base_url))
    return 'Internal error, please contact support', http.client.INTERNAL_SERVER_ERROR


def shorttoken(token):
    '''The last 20 chars of a token, enough to correlate logs without leaking the credential'''
    return token[-20:] if token else 'NA'


def parseDocumentId(documentid):
    '''Splits a document id of the form `fileid[_instanceid[_version[_sessionid]]]`
    into a (fileid, instanceid, version, sessionid) tuple. Raises ValueError if malformed.'''
    parts = documentid.split('_')
    if not parts[0] or len(parts) > 4:
        raise ValueError(f'Malformed document id {documentid}')
    parts += [None] * (4 - len(parts))
    fileid, instanceid, version, sessionid = parts
    return fileid, instanceid or '', int(version) if version else 0, sessionid


def validateAndLogSession(op, documentid, failcode):
    '''Convenience function to resolve the access token against the token store and validate it against
    the requested document. Returns (session, None) on success, where the session carries the version
    requested in the document id, or (message, failcode) otherwise:
    the failure code depends on the operation, as the WOPI clients discriminate on it.'''
    srv.refreshconfig()
    req = flask.request
    token = req.args.get('access_token', '')
    client = req.headers.get(REALIPHEADER, req.remote_addr)
    try:
        fileid, _, version, _ = parseDocumentId(documentid)
    except ValueError as e:
        log.warning(f'msg="{op}: invalid document id" client="{client}" error="{e}" token="{shorttoken(token)}"')
        return 'Invalid document id', http.client.BAD_REQUEST
    if not token:
        log.info(f'msg="{op}: missing access token" client="{client}" fileid="{fileid}"')
        return 'Invalid access token', failcode
    session = ts.resolve(token)
    if not session:
        log.info('msg="%s: unknown or expired access token" client="%s" fileid="%s" token="%s"' %
                 (op, client, fileid, shorttoken(token)))
        return 'Invalid access token', failcode
    if session.fileid != fileid:
        log.warning('msg="%s: access token not valid for the requested file" client="%s" fileid="%s" '
                    'tokenfileid="%s" token="%s"' % (op, client, fileid, session.fileid, shorttoken(token)))
        return 'Invalid access token', failcode

    # log all relevant headers to help debugging
    log.debug('msg="%s: client context" owner="%s" editor="%s" fileid="%s" version="%d" token="%s" client="%s" '
              'reqId="%s" sessionId="%s" correlationId="%s"' %
              (op, session.owner, session.editor, fileid, version, shorttoken(token), client,
               req.headers.get('X-Request-Id'), req.headers.get('X-WOPI-SessionId'),
               req.headers.get('X-WOPI-CorrelationId')))
    return session._replace(version=version), None


def getTimestampHeader(headers):
    '''Returns the last known modification time given by the client, if any'''
    for h in TIMESTAMPHEADERS:
        if headers.get(h):
            return headers[h]
    return None


def toISO8601(mtime):
    '''Formats a modification time as exchanged with the WOPI clients: UTC and second granularity,
    so that equal timestamps compare equal as strings'''
    return datetime.fromtimestamp(int(mtime), tz=timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ')


def decodeSuggestedTarget(target):
    '''The suggested target of a PutRelative call is UTF-7 encoded. Raises UnicodeError if undecodable'''
    return target.encode().decode('utf-7')


def getTranslation(config):
    '''Returns the translations for the user-facing messages, falling back to the untranslated strings'''
    return gettext.translation('wopihost', localedir=config.get('general', 'localedir', fallback=None),
                               languages=[config.get('general', 'locale', fallback='en')], fallback=True)


def getEditor(userid):
    '''Resolves the acting identity of a session against the user directory (the `[users]` config section,
    with entries as `userid = Display Name <email>`). A missing userid is a remote, anonymous user.'''
    if not userid:
        return AnonymousEditor(srv.l10n.gettext('remote user'))
    entry = srv.config.get('users', userid, fallback=None)
    if not entry:
        log.warning(f'msg="User not found in the user directory, using the userid as display name" userid="{userid}"')
        return KnownEditor(userid, userid, None)
    displayname, email = parseaddr(entry)
    return KnownEditor(userid, displayname or userid, email or None)


def makeWatermark(template, editor):
    '''Fills the watermark template with the editor's email, or display name if no email is known'''
    email = getattr(editor, 'email', None)
    return template.replace(WATERMARKPLACEHOLDER, email if email else editor.displayname)


def generateWopiSrc(fileid):
    '''Returns the WOPISrc URL for the given fileid on this host'''
    return f'{srv.wopiurl}/wopi/files/{fileid}_{srv.instanceid}'


def serverHostFromRequest():
    '''The scheme and host of the current request, as a postMessage origin'''
    return f'{flask.request.scheme}://{flask.request.host}'


# Creates a Flask response object with a JSON-encoded body, the given status code,
# and the specified headers (or an empty dictionary if none are provided).
def createJsonResponse(response_body, status_code, headers=None):
    headers = headers or {}
    headers['Content-Type'] = 'application/json'
    return flask.Response(response=json.dumps(response_body), status=status_code, headers=headers)


def nowEpoch():
    '''One-liner for the current time in seconds since the epoch'''
    return int(time.time())

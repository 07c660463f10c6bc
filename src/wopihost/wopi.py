'''
wopi.py

Implementation of the core WOPI API: CheckFileInfo, GetFile, PutFile and PutRelative.
Locking and the other file-level operations are not supported.
'''

import os
import http.client
from more_itertools import peekable
from werkzeug.exceptions import ClientDisconnected
import flask
import wopihost.wopiutils as utils
import wopihost.commoniface as common
import wopihost.pathutils as pathutils

IO_ERROR = 'I/O Error, please contact support'

# file-level operations known to the protocol but not implemented by this host
UNSUPPORTED_OPS = ('LOCK', 'UNLOCK', 'REFRESH_LOCK', 'GET_LOCK', 'DELETE', 'RENAME_FILE',
                   'PUT_USER_INFO', 'GET_SHARE_URL')

# convenience references to global entities: the storage and token store layers are
# injected by the server on initialization
st = None
ts = None
srv = None
log = None


def _token():
    return utils.shorttoken(flask.request.args.get('access_token'))


def _getfilehandle(op, session):
    '''Returns a handle to the session's file, or None if the storage denies it'''
    try:
        return st.getfilehandle(session.fileid, session.owner, session.editor)
    except IOError as e:
        log.warning('msg="%s: could not retrieve file" fileid="%s" owner="%s" editor="%s" token="%s" error="%s"' %
                    (op, session.fileid, session.owner, session.editor, _token(), e))
        return None


def checkFileInfo(session):
    '''Implements the CheckFileInfo WOPI call'''
    f = _getfilehandle('CheckFileInfo', session)
    if not f:
        return 'File not found', http.client.NOT_FOUND

    # opening a handle does not guarantee that the storage lets us read the file: force a read operation
    try:
        reader = f.read()
        firstchunk = next(reader, b'')
        reader.close()
        if isinstance(firstchunk, IOError):
            raise firstchunk
    except IOError as e:
        if common.isdenial(e):
            log.warning('msg="CheckFileInfo: could not open file for read" filename="%s" token="%s" error="%s"' %
                        (f.path, _token(), e))
            return 'File not found', http.client.NOT_FOUND
        log.error('msg="CheckFileInfo: unexpected error reading file" filename="%s" token="%s" error="%s"' %
                  (f.path, _token(), e))
        return IO_ERROR, http.client.INTERNAL_SERVER_ERROR

    editor = utils.getEditor(session.editor)
    if isinstance(editor, utils.AnonymousEditor):
        # remote users have no personal space where to save as
        editorid = editor.displayname
        cannotwriterelative = True
    else:
        editorid = editor.userid
        cannotwriterelative = not f.isparentcreatable()

    canwrite = utils.Attributes.CAN_UPDATE in session.attributes
    canprint = utils.Attributes.CAN_PRINT in session.attributes
    canexport = utils.Attributes.CAN_EXPORT in session.attributes
    watermark = None
    if utils.Attributes.HAS_WATERMARK in session.attributes:
        watermark = utils.makeWatermark(srv.watermarktext, editor)

    fmd = {
        'BaseFileName': f.name,
        'Size': f.size,
        'Version': str(session.version),
        'OwnerId': session.owner,
        'UserId': editorid,
        'UserFriendlyName': editor.displayname,
        'UserCanWrite': canwrite,
        'SupportsGetLock': False,
        'SupportsLocks': False,
        'UserCanNotWriteRelative': cannotwriterelative,
        'PostMessageOrigin': session.serverhost,
        'LastModifiedTime': utils.toISO8601(f.mtime),
        'DisablePrint': not canprint,
        'HidePrintOption': not canprint,
        'DisableExport': not canexport,
        'HideExportOption': not canexport,
        # the "save to storage" option and in-document copy are hidden as the user cannot download the file
        'HideSaveOption': not canexport,
        'DisableCopy': not canexport,
        'WatermarkText': watermark,
    }
    log.info(f'msg="File metadata response" token="{_token()}" metadata="{fmd}"')
    return utils.createJsonResponse(fmd, http.client.OK)


def _streamfile(content, filename):
    '''Streams the given content to the client, a client going away is not an error'''
    try:
        for chunk in content:
            if isinstance(chunk, IOError):
                # headers are already sent, the response gets truncated
                log.error('msg="GetFile: read failed while streaming" filename="%s" token="%s" error="%s"' %
                          (filename, _token(), chunk))
                return
            yield chunk
    except GeneratorExit:
        log.debug(f'msg="GetFile: client disconnected while downloading" filename="{filename}" token="{_token()}"')
        raise


def getFile(session):
    '''Implements the GetFile WOPI call'''
    f = _getfilehandle('GetFile', session)
    if not f:
        return 'File not found', http.client.NOT_FOUND
    content = peekable(f.read())
    firstchunk = content.peek(b'')
    if isinstance(firstchunk, IOError):
        log.error('msg="GetFile: download failed" filename="%s" token="%s" error="%s"' %
                  (f.path, _token(), firstchunk))
        if common.isdenial(firstchunk):
            return 'File not found', http.client.NOT_FOUND
        return 'Failed to fetch file from storage', http.client.INTERNAL_SERVER_ERROR
    if not content:
        # file is empty, still return OK (strictly speaking, we should return 204 NO_CONTENT)
        log.info(f'msg="GetFile: empty file" filename="{f.path}" token="{_token()}"')
        resp = flask.Response(b'', mimetype='application/octet-stream')
    else:
        log.info(f'msg="GetFile: streaming file" filename="{f.path}" token="{_token()}"')
        # the generator must be consumed within the request context
        resp = flask.Response(flask.stream_with_context(_streamfile(content, f.path)),
                              mimetype='application/octet-stream')
    resp.status_code = http.client.OK
    resp.headers['Content-Disposition'] = f'attachment; filename="{f.name}"'
    resp.headers['X-Frame-Options'] = 'sameorigin'
    resp.headers['X-XSS-Protection'] = '1; mode=block'
    return resp


def putFile(session):
    '''Implements the PutFile WOPI call'''
    if utils.Attributes.CAN_UPDATE not in session.attributes:
        log.warning('msg="PutFile: attempting to write using a read-only token" fileid="%s" editor="%s" token="%s"' %
                    (session.fileid, session.editor, _token()))
        return 'Not allowed', http.client.FORBIDDEN
    wopits = utils.getTimestampHeader(flask.request.headers)
    f = _getfilehandle('PutFile', session)
    if not f:
        return 'File not found', http.client.NOT_FOUND

    if not wopits:
        log.debug(f'msg="PutFile: no timestamp given, saving file" filename="{f.path}" token="{_token()}"')
    else:
        mtime = utils.toISO8601(f.mtime)
        if wopits != mtime:
            # someone else updated the file since the client read it: tell the client about this conflict
            log.warning('msg="PutFile: document timestamp mismatch" filename="%s" clientmtime="%s" mtime="%s" token="%s"' %
                        (f.path, wopits, mtime, _token()))
            return utils.createJsonResponse({'LOOLStatusCode': utils.LOOL_STATUS_DOC_CHANGED}, http.client.CONFLICT)

    log.info('msg="PutFile" filename="%s" fileid="%s" owner="%s" editor="%s" token="%s"' %
             (f.path, session.fileid, session.owner, session.editor, _token()))
    try:
        f.putcontent(flask.request.stream)
        newmtime = utils.toISO8601(f.mtime)
    except ClientDisconnected:
        log.info(f'msg="PutFile: client disconnected while uploading, file not saved" filename="{f.path}" token="{_token()}"')
        return 'Client disconnected', http.client.BAD_REQUEST
    except IOError as e:
        log.error(f'msg="PutFile: error writing file" filename="{f.path}" token="{_token()}" error="{e}"')
        return IO_ERROR, http.client.INTERNAL_SERVER_ERROR
    log.info(f'msg="File stored successfully" filename="{f.path}" mtime="{newmtime}" token="{_token()}"')
    return utils.createJsonResponse({'status': 'success', 'LastModifiedTime': newmtime}, http.client.OK)


def _badRequest(message):
    return utils.createJsonResponse({'status': 'error', 'message': message}, http.client.BAD_REQUEST)


def _dropNewFile(targetName):
    '''Removes the empty file created by a failed PutRelative'''
    try:
        st.removefile(targetName)
    except IOError as e:
        log.warning(f'msg="PutRelative: failed to remove the new file" target="{targetName}" error="{e}"')


def putRelative(session):
    '''Implements the PutRelative WOPI call. Corresponds to the 'Save as...' menu entry.'''
    if utils.Attributes.CAN_UPDATE not in session.attributes:
        log.warning('msg="PutRelative: attempting to write using a read-only token" fileid="%s" editor="%s" token="%s"' %
                    (session.fileid, session.editor, _token()))
        return 'Not allowed', http.client.FORBIDDEN
    invalidname = srv.l10n.gettext('Invalid filename')
    try:
        suggTarget = utils.decodeSuggestedTarget(flask.request.headers.get('X-WOPI-SuggestedTarget', ''))
    except UnicodeError as e:
        log.warning(f'msg="PutRelative: undecodable suggested target" token="{_token()}" error="{e}"')
        return _badRequest(invalidname)
    f = _getfilehandle('PutRelative', session)
    if not f:
        return 'File not found', http.client.NOT_FOUND

    userfolder = st.getuserfolder(session.editor) if session.editor else None
    targetName = pathutils.resolveTarget(suggTarget, os.path.dirname(f.path), userfolder)
    log.info('msg="PutRelative" filename="%s" editor="%s" suggTarget="%s" target="%s" token="%s"' %
             (f.path, session.editor, suggTarget, targetName, _token()))
    if not targetName:
        log.warning(f'msg="PutRelative: no target could be resolved" suggTarget="{suggTarget}" token="{_token()}"')
        return _badRequest('Cannot create the file')
    try:
        targetName = pathutils.verifyPath(targetName, srv.blacklistedfiles)
    except pathutils.InvalidPathError as e:
        log.warning(f'msg="PutRelative: invalid target" target="{targetName}" token="{_token()}" reason="{e}"')
        return _badRequest(invalidname)

    try:
        # create the containing folder first
        if not st.nodeexists(os.path.dirname(targetName)):
            st.newfolder(os.path.dirname(targetName))
        # then a new file, making sure not to overwrite anything
        targetName = pathutils.getNonExistingName(targetName, st.nodeexists)
        newfileid = st.newfile(targetName)
    except IOError as e:
        log.error(f'msg="PutRelative: failed to create target" target="{targetName}" token="{_token()}" error="{e}"')
        return IO_ERROR, http.client.INTERNAL_SERVER_ERROR
    newf = _getfilehandle('PutRelative', session._replace(fileid=newfileid))
    if not newf:
        return 'File not found', http.client.NOT_FOUND
    try:
        newf.putcontent(flask.request.stream)
    except ClientDisconnected:
        log.info(f'msg="PutRelative: client disconnected while uploading" target="{targetName}" token="{_token()}"')
        _dropNewFile(targetName)
        return 'Client disconnected', http.client.BAD_REQUEST
    except IOError as e:
        log.error(f'msg="PutRelative: error writing file" target="{targetName}" token="{_token()}" error="{e}"')
        _dropNewFile(targetName)
        return IO_ERROR, http.client.INTERNAL_SERVER_ERROR

    # the new session keeps the PostMessageOrigin of the original one
    serverhost = session.serverhost or utils.serverHostFromRequest()
    newsession = ts.mint(newfileid, 0, utils.SAVEAS_ATTRIBUTES, serverhost, session.owner, session.editor)
    putrelmd = {
        'Name': newf.name,
        'Url': f'{utils.generateWopiSrc(newfileid)}?access_token={newsession.token}',
    }
    log.info('msg="PutRelative: file stored successfully" target="%s" mtime="%s" token="%s" newtoken="%s"' %
             (targetName, utils.toISO8601(newf.mtime), _token(), utils.shorttoken(newsession.token)))
    return utils.createJsonResponse(putrelmd, http.client.OK)


def getOperationSupport(op):
    '''Classifies a file-level operation as `supported`, `unsupported` (known to the protocol) or `unknown`'''
    if op == 'PUT_RELATIVE':
        return 'supported'
    if op in UNSUPPORTED_OPS:
        return 'unsupported'
    return 'unknown'


def fileOperation(documentid):
    '''A dispatcher for the file-level operations selected by the X-WOPI-Override header'''
    op = flask.request.headers.get('X-WOPI-Override', '')
    support = getOperationSupport(op)
    if support == 'supported':
        sessionOrMsg, httpcode = utils.validateAndLogSession('PutRelative', documentid, http.client.FORBIDDEN)
        if httpcode:
            return sessionOrMsg, httpcode
        return putRelative(sessionOrMsg)
    if support == 'unsupported':
        log.warning(f'msg="File operation unsupported" operation="{op}" token="{_token()}"')
    else:
        log.warning(f'msg="File operation unknown" operation="{op}" token="{_token()}"')
    return 'Not supported operation found in header', http.client.NOT_IMPLEMENTED

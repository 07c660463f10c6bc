'''
localiface.py

Local storage interface for the WOPI host.
Files are laid out as `<storagehomepath>/<userid>/files/...`, each user's
personal folder being `/<userid>/files`. This interface is meant for
development purposes and for the test suite.
'''

import time
import os
import shutil
import tempfile
from stat import S_ISDIR, S_ISREG
import wopihost.commoniface as common

# module-wide state
config = None
log = None
homepath = None


def _getfilepath(filepath):
    '''map the given filepath into the target fs by prepending the homepath (see storagehomepath in wopiserver.conf)'''
    return os.path.normpath(homepath + os.sep + filepath)


def _isunder(filepath, folder):
    '''True if the given storage path is inside the given storage folder'''
    return os.path.normpath(filepath).startswith(os.path.normpath(folder) + os.sep)


def init(inconfig, inlog):
    '''Init module-level variables'''
    global config               # pylint: disable=global-statement
    global log                  # pylint: disable=global-statement
    global homepath             # pylint: disable=global-statement
    config = inconfig
    log = inlog
    homepath = config.get('local', 'storagehomepath')
    try:
        # validate the given storagehomepath folder
        mode = os.stat(homepath).st_mode
        if not S_ISDIR(mode):
            raise IOError('Not a directory')
    except IOError as e:
        raise IOError(f'Could not stat storagehomepath folder {homepath}: {e}')


def healthcheck():
    '''Probes the storage and returns a status message. For local storage, we just stat the root'''
    try:
        return 'OK' if S_ISDIR(os.stat(homepath).st_mode) else 'FAIL'
    except OSError as e:
        log.error(f'msg="Health check: failed to stat storagehomepath" homepath="{homepath}" error="{e}"')
        return 'FAIL'


def getuserfolder(userid):
    '''Returns the personal folder of the given user'''
    return f'/{userid}/files'


def nodeexists(filepath):
    '''Checks whether a file or folder exists at the given path'''
    return os.path.lexists(_getfilepath(filepath))


def newfolder(filepath):
    '''Creates the given folder including any missing parent, does nothing if it already exists'''
    try:
        os.makedirs(_getfilepath(filepath), exist_ok=True)
        log.info(f'msg="Folder created" filepath="{filepath}"')
    except OSError as e:
        log.error(f'msg="Failed to create folder" filepath="{filepath}" error="{e}"')
        raise IOError(e)


def newfile(filepath):
    '''Creates an empty file at the given path in O_EXCL mode and returns its fileid'''
    try:
        fd = os.open(_getfilepath(filepath), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        os.close(fd)
    except FileExistsError:
        log.info(f'msg="File exists on create" filepath="{filepath}"')
        raise IOError(common.EXCL_ERROR)
    except OSError as e:
        log.error(f'msg="Failed to create file" filepath="{filepath}" error="{e}"')
        raise IOError(e)
    log.info(f'msg="File created" filepath="{filepath}"')
    return common.encodefileid(filepath)


def removefile(filepath):
    '''Removes the file at the given path'''
    try:
        os.remove(_getfilepath(filepath))
    except FileNotFoundError:
        raise IOError(common.ENOENT_MSG)
    except OSError as e:
        log.error(f'msg="Failed to remove file" filepath="{filepath}" error="{e}"')
        raise IOError(e)
    log.info(f'msg="File removed" filepath="{filepath}"')


def getfilehandle(fileid, owner, editor):
    '''Returns a handle to the given file on behalf of the given owner and editor.
    The file is accessible if it sits in the owner's folder, where the editor is assumed to have been
    granted access, or in the editor's own folder. Raises IOError otherwise.'''
    filepath = common.decodefileid(fileid)
    folders = [getuserfolder(owner)]
    if editor:
        folders.append(getuserfolder(editor))
    if not any(_isunder(filepath, f) for f in folders):
        log.warning('msg="Access denied to file outside of the user folders" filepath="%s" owner="%s" editor="%s"' %
                    (filepath, owner, editor))
        raise IOError(common.ACCESS_ERROR)
    try:
        statInfo = os.stat(_getfilepath(filepath))
    except FileNotFoundError:
        log.info(f'msg="File not found" filepath="{filepath}"')
        raise IOError(common.ENOENT_MSG)
    except PermissionError:
        raise IOError(common.ACCESS_ERROR)
    if not S_ISREG(statInfo.st_mode):
        log.info(f'msg="Not a file" filepath="{filepath}"')
        raise IOError(common.ENOENT_MSG)
    if not os.access(_getfilepath(filepath), os.R_OK):
        raise IOError(common.ACCESS_ERROR)
    return LocalFileHandle(fileid, filepath)


class LocalFileHandle(common.FileHandle):
    '''A handle to a file on the local storage'''

    def _stat(self):
        try:
            return os.stat(_getfilepath(self.path))
        except FileNotFoundError:
            raise IOError(common.ENOENT_MSG)
        except OSError as e:
            raise IOError(e)

    @property
    def size(self):
        return self._stat().st_size

    @property
    def mtime(self):
        return self._stat().st_mtime

    def isparentcreatable(self):
        return os.access(os.path.dirname(_getfilepath(self.path)), os.W_OK | os.X_OK)

    def read(self):
        '''Read the file. Note that the function is a generator, managed by the app server.'''
        log.debug(f'msg="Invoking read" filepath="{self.path}"')
        try:
            tstart = time.time()
            chunksize = config.getint('io', 'chunksize')
            with open(_getfilepath(self.path), mode='rb', buffering=chunksize) as f:
                tend = time.time()
                log.info(f'msg="File open for read" filepath="{self.path}" elapsedTimems="{(tend - tstart) * 1000:.1f}"')
                # the actual read is buffered and managed by the app server
                for chunk in iter(lambda: f.read(chunksize), b''):
                    yield chunk
        except FileNotFoundError:
            # log this case as info to keep the logs cleaner
            log.info(f'msg="File not found on read" filepath="{self.path}"')
            # as this is a generator, we yield the error instead of the file's contents
            yield IOError(common.ENOENT_MSG)
        except PermissionError as e:
            log.warning(f'msg="Access denied on read" filepath="{self.path}" error="{e}"')
            yield IOError(common.ACCESS_ERROR)
        except OSError as e:
            log.error(f'msg="Error opening the file for read" filepath="{self.path}" error="{e}"')
            yield IOError(e)

    def putcontent(self, stream):
        '''Overwrite the file with the content of the given stream. The content is copied chunk by chunk
        to a temporary file next to the target, which then atomically replaces it: if the copy fails
        or the client goes away, the original file is left untouched.'''
        target = _getfilepath(self.path)
        chunksize = config.getint('io', 'chunksize')
        tstart = time.time()
        try:
            tmp = tempfile.NamedTemporaryFile(mode='wb', dir=os.path.dirname(target),
                                              prefix='.~wopi.', delete=False)
        except OSError as e:
            log.error(f'msg="Error creating temporary file for write" filepath="{self.path}" error="{e}"')
            raise IOError(e)
        written = 0
        try:
            with tmp:
                for chunk in iter(lambda: stream.read(chunksize), b''):
                    tmp.write(chunk)
                    written += len(chunk)
            shutil.copymode(target, tmp.name)
            os.replace(tmp.name, target)
        except OSError as e:
            os.remove(tmp.name)
            log.error(f'msg="Error writing file" filepath="{self.path}" error="{e}"')
            raise IOError(e)
        except BaseException:
            # e.g. the client disconnected while uploading: drop what we got so far
            os.remove(tmp.name)
            raise
        log.info('msg="File written successfully" filepath="%s" size="%d" elapsedTimems="%.1f"' %
                 (self.path, written, (time.time() - tstart) * 1000))

'''
pathutils.py

Resolution and validation of the target path of a PutRelative ("save as") operation.
These functions are pure: the only storage interaction is through the `exists`
callback given to getNonExistingName().
'''

import re
import posixpath

# name given to a new file when the client only suggests an extension
NEWFILENAME = 'New File'

# characters not allowed in file names
INVALIDCHARS = set('\\/:*?"<>|')

MAXNAMELENGTH = 255
MAXPATHLENGTH = 4096

# matches a name already disambiguated as `name (n)`
_SUFFIXED_RE = re.compile(r'^(?P<base>.*) \((?P<counter>\d+)\)$')


class InvalidPathError(ValueError):
    '''Raised when a target path does not comply with the storage naming rules'''


def resolveTarget(suggested, sourcefolder, userfolder):
    '''Computes the destination path of a PutRelative operation. The first matching rule wins:
    - a suggestion starting with `.` is an extension, the file is created as `New File<ext>` next to the source;
    - a suggestion not starting with `/` is a name relative to the source folder;
    - otherwise it is an absolute path within the editor's personal folder.
    Returns an empty string if no path can be resolved, i.e. for an empty suggestion, or for an
    absolute one when the editor has no personal folder.'''
    if not suggested:
        return ''
    sourcefolder = sourcefolder.rstrip('/')
    if suggested[0] == '.':
        return sourcefolder + '/' + NEWFILENAME + suggested
    if suggested[0] != '/':
        return sourcefolder + '/' + suggested
    if not userfolder:
        return ''
    return userfolder.rstrip('/') + suggested


def verifyPath(path, blacklist=()):
    '''Validates the given path against the storage naming rules and returns it normalized.
    Raises InvalidPathError with the reason otherwise.'''
    if len(path) > MAXPATHLENGTH:
        raise InvalidPathError(f'Path too long (max {MAXPATHLENGTH} characters)')
    for ch in path:
        if ord(ch) < 0x20 or ord(ch) == 0x7f:
            raise InvalidPathError(f'Path contains control character 0x{ord(ch):02x}')
    if '..' in path.split('/'):
        raise InvalidPathError('Path traversal is not allowed')
    name = posixpath.basename(path)
    if not name.strip() or name == '.':
        raise InvalidPathError('Empty file name')
    if len(name) > MAXNAMELENGTH:
        raise InvalidPathError(f'File name too long (max {MAXNAMELENGTH} characters)')
    if name != name.rstrip():
        raise InvalidPathError('File name ends with whitespace')
    badchars = INVALIDCHARS.intersection(name)
    if badchars:
        raise InvalidPathError(f"File name contains invalid characters {''.join(sorted(badchars))}")
    if name.lower() in (b.lower() for b in blacklist):
        raise InvalidPathError(f'File name {name} is reserved')
    return posixpath.normpath(path)


def getNonExistingName(path, exists):
    '''Returns the given path if nothing exists there, otherwise the first free `name (n).ext` variant,
    starting from 2 or from the next counter if the name is already suffixed'''
    if not exists(path):
        return path
    folder, name = posixpath.split(path)
    base, ext = posixpath.splitext(name)
    counter = 2
    m = _SUFFIXED_RE.match(base)
    if m:
        base, counter = m.group('base'), int(m.group('counter')) + 1
    while True:
        candidate = posixpath.join(folder, f'{base} ({counter}){ext}')
        if not exists(candidate):
            return candidate
        counter += 1

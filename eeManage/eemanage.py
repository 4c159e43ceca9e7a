import os
import re
import ee
import logging
import time
import datetime
import posixpath
import tempfile

import pandas as pd

STRICT = True

GEE_JSON = os.getenv("GEE_JSON")
GEE_SERVICE_ACCOUNT = os.getenv("GEE_SERVICE_ACCOUNT") or "service account"
GOOGLE_APPLICATION_CREDENTIALS = os.getenv("GOOGLE_APPLICATION_CREDENTIALS")
GEE_PROJECT = os.getenv("GEE_PROJECT") or os.getenv("CLOUDSDK_CORE_PROJECT")
GEE_TASK_REPORT = os.getenv("GEE_TASK_REPORT") or os.path.join(
    tempfile.gettempdir(), 'ee_manage_task_file.csv')

LEGACY_PREFIXES = (
    'projects/earthengine-legacy/assets/',
    'projects/earthengine/legacy/assets/',
)

# The service has spelled asset types differently across API generations
ASSET_TYPE_NAMES = {
    'Folder': ('FOLDER', 'Folder', 'folder'),
    'Image': ('IMAGE', 'Image', 'image'),
    'ImageCollection': ('IMAGE_COLLECTION', 'ImageCollection', 'imagecollection'),
    'Feature': ('FEATURE', 'Feature', 'feature'),
    'FeatureCollection': ('FEATURE_COLLECTION', 'FeatureCollection', 'featurecollection'),
    'Table': ('TABLE', 'Table', 'table'),
}

CREATE_TYPES = {
    'Folder': ee.data.ASSET_TYPE_FOLDER,
    'ImageCollection': ee.data.ASSET_TYPE_IMAGE_COLL,
}

TASK_REPORT_COLUMNS = [
    'ID', 'State', 'DestinationPath', 'Type', 'Start',
    'DeltaToCreate(s)', 'DeltaToCompletedTask(s)', 'ErrorMessage',
]
NO_TASKS_MESSAGE = 'No recent task to report'

_task_report_path = GEE_TASK_REPORT


logger = logging.getLogger(__name__)


#######################
# 0. Config functions #
#######################

def init(service_account=GEE_SERVICE_ACCOUNT,
         credential_path=GOOGLE_APPLICATION_CREDENTIALS,
         project=GEE_PROJECT, credential_json=GEE_JSON):
    '''
    Initialize Earth Engine.

    Defaults to read from environment.

    If no credentials are provided, will attempt to use credentials saved by
    the `earthengine authenticate` utility.

    `service_account` Service account name
    `credential_path` Path to json file containing private key
    `project`         GCP project for earthengine
    `credential_json` Json-string to use instead of `credential_path`

    https://developers.google.com/earth-engine/service_account
    '''
    init_opts = {}
    if credential_json:
        init_opts['credentials'] = ee.ServiceAccountCredentials(service_account, key_data=credential_json)
    elif credential_path:
        init_opts['credentials'] = ee.ServiceAccountCredentials(service_account, key_file=credential_path)
        os.environ['GOOGLE_APPLICATION_CREDENTIALS'] = credential_path
    if project:
        init_opts['project'] = project
    logger.debug(f'Initializing Earth Engine with project {project}')
    ee.Initialize(**init_opts)


def initJson(credential_json=GEE_JSON, project=GEE_PROJECT):
    '''
    Initialize from a json key string

    Defaults from GEE_JSON env variable
    '''
    init('service_account', None, project, credential_json)


def setTaskReportPath(path):
    '''Set the local csv file used to cache the last task report'''
    global _task_report_path
    _task_report_path = path


def getTaskReportPath():
    return _task_report_path


########################
# 1. Path functions    #
########################

def assetTypes(*kinds):
    '''All type names the service may report for the given asset kinds

    Defaults to the container kinds, Folder and ImageCollection.
    '''
    kinds = kinds or ('Folder', 'ImageCollection')
    names = ()
    for kind in kinds:
        if kind not in ASSET_TYPE_NAMES:
            raise ValueError(f'Unknown asset type {kind}, use one of {list(ASSET_TYPE_NAMES)}')
        names += ASSET_TYPE_NAMES[kind]
    return names


FOLDER_TYPES = assetTypes('Folder')
IMAGE_COLLECTION_TYPES = assetTypes('ImageCollection')
IMAGE_TYPES = assetTypes('Image')
TABLE_TYPES = assetTypes('Table', 'FeatureCollection', 'Feature')
CONTAINER_TYPES = FOLDER_TYPES + IMAGE_COLLECTION_TYPES
LEAF_TYPES = IMAGE_TYPES + assetTypes('Table', 'FeatureCollection')
PROPERTY_TYPES = IMAGE_TYPES + IMAGE_COLLECTION_TYPES + assetTypes('Table', 'FeatureCollection')


def removeProject(path):
    '''Strip the legacy project prefix from an asset id'''
    for prefix in LEGACY_PREFIXES:
        path = path.replace(prefix, '')
    return path


def verifyPath(path, strict=True):
    '''Normalize an asset path

    Drops file extensions, empty components and legacy project prefixes.
    If `strict`, raises unless the asset exists.
    '''
    stem = path.split('.')[0]
    folder = removeProject('/'.join(p for p in stem.split('/') if p))
    if strict and info(folder) is None:
        raise Exception(
            f'{path} is not a valid destination. Make sure a correct full path is '
            'provided (e.g. either users/user/nameofcollection or '
            'projects/myproject/assets/myfolder/newcollection).'
        )
    return folder


def rootOf(path):
    '''Root folder of an asset path, `users/<name>` or `projects/<project>/assets`'''
    parts = path.split('/')
    if parts[0] == 'projects':
        return '/'.join(parts[:3])
    return '/'.join(parts[:2])


def _currentProject():
    '''Cloud project Earth Engine was initialized with'''
    return ee.data._get_projects_path().split('/', 1)[1]


def getRoots():
    '''Asset roots of the authenticated account

    A Cloud project has the single root `projects/<project>/assets`, only
    legacy accounts list their `users/<name>` roots.
    '''
    project = _currentProject()
    if project != ee.data.DEFAULT_CLOUD_API_USER_PROJECT:
        return [f'projects/{project}/assets']
    return [removeProject(r['id']).rstrip('/') for r in ee.data.getAssetRoots()]


def getHome():
    '''Get user root directory'''
    roots = getRoots()
    if not len(roots):
        raise Exception("No available asset roots for provided credentials")
    return roots[0]


def info(asset):
    '''Get asset info, None if the asset does not exist'''
    return ee.data.getInfo(asset)


def exists(asset):
    '''Check if asset exists'''
    return True if info(asset) else False


def isContainer(asset, image_collection_ok=True):
    '''Check if path is folder or imageCollection'''
    asset_info = info(asset)
    container_types = FOLDER_TYPES
    if image_collection_ok:
        container_types += IMAGE_COLLECTION_TYPES
    return bool(asset_info) and asset_info['type'] in container_types


#################################
# 2. Asset management functions #
#################################

def ls(path, abspath=True, details=False, pageToken=None):
    '''List assets in path'''
    resp = ee.data.listAssets({'parent': path, 'pageToken': pageToken})
    for a in resp.get('assets', []):
        name = removeProject(a['name'])
        a['name'] = name if abspath else posixpath.basename(name)
        yield (a if details else a['name'])
    if resp.get('nextPageToken'):
        for a in ls(path, abspath, details, pageToken=resp['nextPageToken']):
            yield a


def tree(path, details=False):
    '''Recursively list all assets in a folder or image collection

    Args:
        path (string): Earth Engine folder or image collection
        details (bool): Yield the asset dict instead of only the asset id

    Yields:
        Children before their parents, so the output can be deleted in order
    '''
    for item in ls(verifyPath(path), details=True):
        if item['type'] in CONTAINER_TYPES:
            for child in tree(item['name'], details):
                yield child
        yield (item if details else item['name'])


def assetList(path=None):
    '''List the direct children of a folder or image collection

    Returns a DataFrame with columns `ID` and `TYPE`, ordered
    ImageCollections, Folders, Images, then Tables.
    '''
    if path is None:
        path = getHome()
    path = verifyPath(path)
    rows = [{'ID': a['name'], 'TYPE': a['type']} for a in ls(path, details=True)]
    df = pd.DataFrame(rows, columns=['ID', 'TYPE'])

    order = (IMAGE_COLLECTION_TYPES, FOLDER_TYPES, IMAGE_TYPES, TABLE_TYPES)
    rank = {name: i for i, names in enumerate(order) for name in names}
    df['_rank'] = df['TYPE'].map(rank).fillna(len(order))
    return df.sort_values('_rank', kind='stable').drop(columns='_rank').reset_index(drop=True)


def create(path, asset_type='Folder'):
    '''Create folder or image collection

    Automatically creates intermediate folders a la `mkdir -p`.
    The path must be under one of the account's own roots.
    '''
    if asset_type not in CREATE_TYPES:
        raise ValueError(f'Invalid asset_type {asset_type}, use one of {list(CREATE_TYPES)}')
    path = verifyPath(path, strict=False)
    root = rootOf(path)
    if root not in getRoots():
        raise Exception(f'The root folder "{root}" is invalid')
    if exists(path):
        logger.info(f'GEE asset {path} already exists')
        return True

    upper = posixpath.dirname(path)
    if upper != root and not exists(upper):
        create(upper, 'Folder')
    ee.data.createAsset({'type': CREATE_TYPES[asset_type]}, path)
    logger.info(f'GEE asset {path} created')
    return True


def createImageCollection(path):
    '''Create image collection'''
    return create(path, 'ImageCollection')


def delete(path):
    '''Delete asset from GEE, emptying folders and collections first'''
    path = verifyPath(path)
    if isContainer(path):
        for child in list(ls(path)):
            delete(child)
    logger.debug(f'Deleting asset {path}')
    ee.data.deleteAsset(path)
    logger.info(f'EE object deleted: {path}')
    return True


def _containerKind(asset_type):
    return 'ImageCollection' if asset_type in IMAGE_COLLECTION_TYPES else 'Folder'


def _destination(src, dest):
    '''A trailing slash on dest means "into this folder"'''
    if dest[-1] == '/':
        dest = dest + posixpath.basename(src.rstrip('/'))
    return dest


def _isWithin(path, folder):
    '''True if path is folder or lies below it'''
    return path == folder or path.startswith(folder + '/')


def copy(src, dest, overwrite=False):
    '''Copy asset

    Folders and image collections are recreated at dest and their
    contents copied recursively. The contents are listed before dest is
    created, so dest may lie inside src.
    '''
    dest = verifyPath(_destination(src, dest), strict=False)
    src = verifyPath(src)
    src_type = info(src)['type']

    if src_type in LEAF_TYPES:
        logger.debug(f'Copying {src} to {dest}')
        ee.data.copyAsset(src, dest, overwrite)
    elif src_type in CONTAINER_TYPES:
        items = sorted(tree(src, details=True), key=lambda a: a['name'].count('/'))
        create(dest, _containerKind(src_type))
        logger.info(f'Copying a total of {len(items)} elements from {src} to {dest}')
        for item in items:
            target = dest + item['name'][len(src):]
            if item['type'] in CONTAINER_TYPES:
                create(target, _containerKind(item['type']))
            else:
                copy(item['name'], target, overwrite)
    else:
        raise Exception(f'Unsupported EE asset object {src_type} at {src}')
    return True


def move(src, dest):
    '''Move asset

    Folders and image collections are moved child by child, then the
    emptied source is deleted.
    '''
    dest = verifyPath(_destination(src, dest), strict=False)
    src = verifyPath(src)
    src_type = info(src)['type']

    if src_type in LEAF_TYPES:
        logger.debug(f'Moving {src} to {dest}')
        ee.data.renameAsset(src, dest)
    elif src_type in CONTAINER_TYPES:
        if _isWithin(dest, src):
            raise Exception(f'Cannot move {src} into itself ({dest})')
        children = list(ls(src))
        if not exists(dest):
            create(dest, _containerKind(src_type))
        logger.info(f'Moving a total of {len(children)} elements from {src} to {dest}')
        for child in children:
            move(child, posixpath.join(dest, posixpath.basename(child)))
        delete(src)
    else:
        raise Exception(f'Unsupported EE asset object {src_type} at {src}')
    return True


def assetSize(path):
    '''Size of an asset in bytes'''
    path = verifyPath(path)
    asset_info = info(path)
    size = int(asset_info.get('sizeBytes', 0))
    logger.info(f"{path} ({asset_info['type']}): {humansize(size)}")
    return size


def getQuota():
    '''Get GEE usage quota of the home root

    Logs total and used storage in human readable form and returns the
    quota dict reported by Earth Engine.
    '''
    quota = ee.data.getAssetRootQuota(getHome())
    size = quota['asset_size']
    logger.info(f"Total Quota: {humansize(int(size['limit']))}")
    logger.info(f"Used Quota: {humansize(int(size['usage']))}")
    return quota


######################################
# 3. Properties and access functions #
######################################

def setProperties(path, properties):
    '''Set asset properties'''
    path = verifyPath(path)
    if info(path)['type'] not in PROPERTY_TYPES:
        raise Exception(f'Impossible to assign properties to {path}, folders have no properties')
    logger.debug(f'Setting properties {list(properties)} on {path}')
    ee.data.setAssetProperties(path, properties)
    return True


def deleteProperties(path, properties=None):
    '''Delete asset properties

    `properties` property name or list of names, deletes all if None
    '''
    path = verifyPath(path)
    if info(path)['type'] not in PROPERTY_TYPES:
        raise Exception(f'Impossible to delete properties of {path}, folders have no properties')
    if properties is None:
        properties = list(ee.data.getAsset(path).get('properties', {}))
    elif isinstance(properties, str):
        properties = [properties]
    logger.debug(f'Deleting properties {properties} from {path}')
    ee.data.setAssetProperties(path, {p: None for p in properties})
    return True


def getAccess(path):
    '''Get IAM policy of asset or folder'''
    return ee.data.getIamPolicy(verifyPath(path))


def _members(members):
    if not members:
        return []
    members = [members] if isinstance(members, str) else list(members)
    return [m if ':' in m or m == 'allUsers' else f'user:{m}' for m in members]


def setAccess(path, editors=None, viewers=None, all_users_can_read=True,
              recursive=False):
    '''Set who can edit and read an asset

    Replaces the editor and viewer bindings, owners are kept.

    `editors`            user email or list of emails
    `viewers`            user email or list of emails
    `all_users_can_read` make the asset public
    `recursive`          apply to the contents of folders too, images in a
                         collection keep inheriting the collection policy
    '''
    path = verifyPath(path)
    if recursive and isContainer(path, image_collection_ok=False):
        for child in ls(path):
            setAccess(child, editors, viewers, all_users_can_read, recursive)

    policy = getAccess(path)
    viewer_members = _members(viewers)
    if all_users_can_read and 'allUsers' not in viewer_members:
        viewer_members.append('allUsers')
    bindings = [b for b in policy.get('bindings', []) if b['role'] == 'roles/owner']
    bindings += [
        {'role': 'roles/editor', 'members': _members(editors)},
        {'role': 'roles/viewer', 'members': viewer_members},
    ]
    policy['bindings'] = [b for b in bindings if b['members']]
    logger.debug(f'Setting IAM policy to {policy} on {path}')
    ee.data.setIamPolicy(path, policy)
    return True


################################
# 4. Task management functions #
################################

def getTasks(active=False):
    '''Return a list of all recent tasks

    If active is true, return tasks with status in
    'READY', 'RUNNING', 'UNSUBMITTED'
    '''
    if active:
        return [t for t in ee.data.getTaskList() if t['state'] in (
            ee.batch.Task.State.READY,
            ee.batch.Task.State.RUNNING,
            ee.batch.Task.State.UNSUBMITTED,
        )]
    return ee.data.getTaskList()


def _formatTimestamp(ms):
    utc = datetime.datetime.fromtimestamp(ms / 1000, tz=datetime.timezone.utc)
    return utc.strftime('%Y-%m-%d %H:%M:%S')


def _taskRecord(task):
    created = task.get('creation_timestamp_ms', 0)
    started = task.get('start_timestamp_ms') or None
    updated = task.get('update_timestamp_ms') or None
    failed = task['state'] == ee.batch.Task.State.FAILED
    return {
        'ID': task['id'],
        'State': task['state'],
        'DestinationPath': re.sub(r'.*:\s', '', task.get('description', '')),
        'Type': task.get('task_type', ''),
        'Start': _formatTimestamp(created),
        'DeltaToCreate(s)': (started - created) / 1000 if started else None,
        'DeltaToCompletedTask(s)': (updated - started) / 1000 if started and updated else None,
        'ErrorMessage': task.get('error_message', '') if failed else '',
    }


def taskReport(cache=False):
    '''Report of tasks that are running or have already been completed

    The report is saved to a csv file (see `setTaskReportPath`), which
    is read back instead of querying Earth Engine if `cache` is True.

    Returns:
        pandas.DataFrame: one row per task
    '''
    if cache:
        if not os.path.exists(_task_report_path):
            raise Exception(f'No task report cached at {_task_report_path}, run taskReport() first')
        logger.debug(f'Reading cached task report {_task_report_path}')
        df = pd.read_csv(_task_report_path)
        if 'ErrorMessage' in df:
            df['ErrorMessage'] = df['ErrorMessage'].fillna('')
        return df

    tasks = getTasks()
    if not tasks:
        logger.info(NO_TASKS_MESSAGE)
        df = pd.DataFrame({'message': [NO_TASKS_MESSAGE]})
    else:
        df = pd.DataFrame([_taskRecord(t) for t in tasks], columns=TASK_REPORT_COLUMNS)
    df.to_csv(_task_report_path, index=False)
    logger.debug(f'Task report of {len(tasks)} tasks saved to {_task_report_path}')
    return df


def cancelTask(task_id):
    '''Cancel a task by id'''
    logger.info(f'Cancelling task {task_id}')
    ee.data.cancelTask(task_id)


def cancelAllRunningTasks():
    '''Cancel all running tasks

    Returns:
        list: ids of the cancelled tasks
    '''
    running = [t['id'] for t in ee.data.getTaskList()
               if t['state'] == ee.batch.Task.State.RUNNING]
    if not running:
        logger.info('There are not any tasks running')
    for task_id in running:
        cancelTask(task_id)
    return running


def _checkTaskCompleted(task_id):
    '''Return True if task completed else False'''
    status = ee.data.getTaskStatus(task_id)[0]
    if status['state'] in (ee.batch.Task.State.CANCELLED,
                           ee.batch.Task.State.FAILED):
        if 'error_message' in status:
            logger.error(status['error_message'])
        if STRICT:
            raise Exception(f"Task {status['id']} ended with state {status['state']}")
        return True
    elif status['state'] == ee.batch.Task.State.COMPLETED:
        return True
    return False


def waitForTasks(task_ids=[], timeout=3600):
    '''Wait for tasks to complete, fail, or timeout

    Waits for all active tasks if task_ids is not provided

    Note: Tasks will not be canceled after timeout, and
    may continue to run.
    '''
    if not task_ids:
        task_ids = [t['id'] for t in getTasks(active=True)]

    start = time.time()
    elapsed = 0
    while elapsed < timeout or timeout == 0:
        elapsed = time.time() - start
        finished = [_checkTaskCompleted(task) for task in task_ids]
        if all(finished):
            logger.info(f'Tasks {task_ids} completed after {elapsed}s')
            return True
        time.sleep(5)
    logger.warning(f'Stopped waiting for {len(task_ids)} tasks after {timeout} seconds')
    if STRICT:
        raise Exception(f'Stopped waiting for {len(task_ids)} tasks after {timeout} seconds')
    return False


def waitForTask(task_id, timeout=3600):
    '''Wait for task to complete, fail, or timeout'''
    return waitForTasks([task_id], timeout)


#########################
# 5. Formatting helpers #
#########################

def humansize(nbytes, suffixes=('B', 'KB', 'MB', 'GB', 'TB', 'PB')):
    '''Format a number of bytes, e.g. 1200 -> "1.17 KB"'''
    count = 0
    while nbytes >= 1024 and count < len(suffixes) - 1:
        nbytes = nbytes / 1024
        count += 1
    if count == 0:
        return f'{nbytes} {suffixes[0]}'
    return f'{nbytes:.2f} {suffixes[count]}'


#ALIAS
mkdir = create
rm = delete
mv = move
cp = copy
du = assetSize

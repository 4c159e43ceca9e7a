import contextlib
import copy
import posixpath
from unittest import mock

import ee
import pytest

from eeManage import eemanage

LEGACY = 'projects/earthengine-legacy/assets/'


class FakeAssetStore:
    '''
    In-memory stand-in for the Earth Engine asset endpoints of `ee.data`,
    keyed by legacy asset id (`users/<name>/...`).
    '''

    def __init__(self, assets, roots=('users/alice',), page_size=None,
                 project=None):
        self.assets = copy.deepcopy(assets)
        self.roots = list(roots)
        self.project = project or ee.data.DEFAULT_CLOUD_API_USER_PROJECT
        self.page_size = page_size
        self.policies = {}
        self.quota = {
            'asset_count': {'usage': '12', 'limit': '10000'},
            'asset_size': {'usage': str(1200), 'limit': str(250 * 1024 ** 3)},
        }

    def children(self, parent):
        return [a for a in self.assets if posixpath.dirname(a) == parent]

    def getInfo(self, path):
        asset = self.assets.get(path)
        if asset is None:
            return None
        return dict(copy.deepcopy(asset), id=path, name=LEGACY + path)

    def getAsset(self, path):
        return self.getInfo(path)

    def getAssetRoots(self):
        return [{'id': r if r.startswith('projects/') else LEGACY + r, 'type': 'Folder'}
                for r in self.roots]

    def listAssets(self, params):
        names = self.children(params['parent'])
        start = int(params.get('pageToken') or 0)
        end = start + self.page_size if self.page_size else len(names)
        resp = {'assets': [{'name': LEGACY + n, 'type': self.assets[n]['type']}
                           for n in names[start:end]]}
        if end < len(names):
            resp['nextPageToken'] = str(end)
        return resp

    def createAsset(self, value, path, overwrite=False):
        assert posixpath.dirname(path) in self.assets, f'parent of {path} missing'
        self.assets[path] = {'type': value['type']}

    def deleteAsset(self, path):
        assert not self.children(path), f'{path} is not empty'
        del self.assets[path]

    def copyAsset(self, src, dest, allow_overwrite=False):
        if dest in self.assets and not allow_overwrite:
            raise Exception(f'{dest} already exists')
        self.assets[dest] = copy.deepcopy(self.assets[src])

    def renameAsset(self, src, dest, allow_overwrite=False):
        self.assets[dest] = self.assets.pop(src)

    def setAssetProperties(self, path, properties):
        current = self.assets[path].setdefault('properties', {})
        for key, value in properties.items():
            if value is None:
                current.pop(key, None)
            else:
                current[key] = value

    def getIamPolicy(self, path):
        return copy.deepcopy(self.policies.get(path, {
            'bindings': [{'role': 'roles/owner', 'members': ['user:alice@example.com']}],
            'etag': 'BwXz',
        }))

    def setIamPolicy(self, path, policy):
        self.policies[path] = policy

    def getAssetRootQuota(self, root):
        return self.quota

    def patches(self):
        names = [
            'getInfo', 'getAsset', 'getAssetRoots', 'listAssets', 'createAsset',
            'deleteAsset', 'copyAsset', 'renameAsset', 'setAssetProperties',
            'getIamPolicy', 'setIamPolicy', 'getAssetRootQuota',
        ]
        return {n: mock.Mock(side_effect=getattr(self, n)) for n in names}


ASSETS = {
    'users/alice': {'type': 'Folder'},
    'users/alice/rgee': {'type': 'FOLDER'},
    'users/alice/rgee/ic': {'type': 'IMAGE_COLLECTION'},
    'users/alice/rgee/ic/img1': {
        'type': 'IMAGE', 'sizeBytes': '2048',
        'properties': {'message': 'hello-world', 'language': 'Python'},
    },
    'users/alice/rgee/ic/img2': {'type': 'IMAGE', 'sizeBytes': '1024'},
    'users/alice/rgee/table': {'type': 'TABLE', 'properties': {'source': 'csv'}},
    'users/alice/rgee/sub': {'type': 'FOLDER'},
    'users/alice/rgee/sub/img3': {'type': 'IMAGE'},
}


@pytest.fixture
def store():
    return FakeAssetStore(ASSETS)


@contextlib.contextmanager
def routed(store):
    '''Route the `ee.data` asset endpoints to the in-memory store.'''
    with mock.patch.multiple('ee.data', **store.patches()), \
            mock.patch.object(eemanage, '_currentProject', side_effect=lambda: store.project):
        yield store


@pytest.fixture
def fake_ee(store):
    with routed(store):
        yield store


CLOUD_ASSETS = {
    'projects/my-project/assets': {'type': 'Folder'},
    'projects/my-project/assets/my-folder': {'type': 'FOLDER'},
    'projects/my-project/assets/my-folder/img': {'type': 'IMAGE'},
}


@pytest.fixture
def cloud_ee():
    '''A Cloud project account, whose asset roots are its top-level assets.'''
    store = FakeAssetStore(
        CLOUD_ASSETS, roots=('projects/my-project/assets/my-folder',), project='my-project',
    )
    with routed(store):
        yield store


@pytest.fixture
def task_report_path(tmp_path):
    previous = eemanage.getTaskReportPath()
    path = tmp_path / 'ee_manage_task_file.csv'
    eemanage.setTaskReportPath(str(path))
    yield path
    eemanage.setTaskReportPath(previous)

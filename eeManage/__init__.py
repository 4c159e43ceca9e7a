'''
Python wrapper for managing assets and tasks on Google Earth Engine.

```
import eeManage

# initialize from environment variables
eeManage.init()

# create a folder and an image collection inside it
eeManage.create('users/me/rgee')
eeManage.create('users/me/rgee/rgee_ic', 'ImageCollection')
eeManage.assetList('users/me/rgee')

# move, tag and share
eeManage.move('users/me/rgee/rgee_ic', 'users/me/rgee/folder/rgee_ic_moved')
eeManage.setProperties('users/me/rgee/folder/rgee_ic_moved', {'message': 'hello-world'})
eeManage.setAccess('users/me/rgee', editors='friend@example.com')

# quota and tasks
eeManage.getQuota()
eeManage.taskReport()
eeManage.cancelAllRunningTasks()

eeManage.delete('users/me/rgee')
```
'''

from .eemanage import *

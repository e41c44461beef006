from django.urls import path,include

urlpatterns=[
    path('v1/priority/',include('priority.urls')),
]

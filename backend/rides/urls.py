from django.urls import path
from . import views

app_name = 'rides'

urlpatterns = [
    # Driver actions
    path('<int:ride_id>/status/', views.update_ride_status, name='update-status'),
    path('<int:ride_id>/locations/', views.upload_locations, name='upload-locations'),

    # Rider / driver
    path('<int:ride_id>/estimate/', views.ride_estimate, name='ride-estimate'),
]

from django.db import connections
from django.http import JsonResponse

from allocation.models import Organ, OrganStatus


def healthz(request):
    try:
        with connections['default'].cursor() as c:
            c.execute('SELECT 1')
            row = c.fetchone()
        available = Organ.objects.filter(status=OrganStatus.AVAILABLE).count()
        return JsonResponse({'ok': True, 'db': bool(row and row[0] == 1), 'availableOrgans': available})
    except Exception as e:
        return JsonResponse({'ok': False, 'error': str(e)}, status=500)
